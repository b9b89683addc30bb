"""n8n-backup: versioned backup, restore and sync for n8n instances."""

__version__ = "0.1.0"
