from .client import MailerClient, MailerError

__all__ = ["MailerClient", "MailerError"]
