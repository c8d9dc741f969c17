"""Library synchronization and transfer engine for e-book collections."""

__version__ = "0.1.0"
