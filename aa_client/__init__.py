"""ERC-4337 (EntryPoint v0.6) UserOperation client."""

__version__ = "0.1.0"
