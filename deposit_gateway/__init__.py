"""Mobile-money deposit gateway backed by the FedaPay processor."""

__version__ = "0.1.0"
