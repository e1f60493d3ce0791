"""Local print agent for POS receipt, kitchen and bar printers."""

__version__ = "0.1.0"
