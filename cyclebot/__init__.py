"""Trading cycle state engine for a BTC/USDT accumulation bot."""

__version__ = "0.1.0"
