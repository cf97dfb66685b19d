"""Email ingestion: turning raw RFC822 bytes into canonical messages."""

from .parser import EmailParser, decode_non_ascii

__all__ = ["EmailParser", "decode_non_ascii"]
