"""Disposable e-mail testing toolkit: POP3 server, mailbox REST API and REST client."""

__version__ = "3.0.0"