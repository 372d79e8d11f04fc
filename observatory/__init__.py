"""Validator liveness observatory for CometBFT chains."""

__version__ = "0.1.0"
