"""Client, retrying sequence executor and security verifier for a stateless EVM execution service."""

__version__ = "0.1.0"

__all__ = ["models", "client", "sequence_client", "tx_sequence", "verifier"]