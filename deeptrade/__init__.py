"""DeepTrade: AI-driven autonomous trading bots settled on Aptos."""

__version__ = "0.1.0"
