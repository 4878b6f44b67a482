"""tandem: run loosely-specified work items in parallel, isolated workspaces."""

from tandem.config import VERSION

__version__ = VERSION
