"""chatvault — multi-turn model conversations with durable local history."""

__version__ = "0.1.0"
