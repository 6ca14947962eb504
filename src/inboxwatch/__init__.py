"""inboxwatch: watch an IMAP mailbox and emit normalized new-mail events."""

__version__ = "0.1.0"
