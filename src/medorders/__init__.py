"""medorders - order, delivery and payment backend for a healthcare marketplace."""

__version__ = "0.1.0"
