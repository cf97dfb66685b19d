"""Bridge forwarding new IMAP mail into Mattermost channels."""

__version__ = "0.1.0"

__all__ = ["__version__"]
