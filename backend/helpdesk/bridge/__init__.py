"""WhatsApp provider bridge."""
from .whatsapp import WhatsAppClient

__all__ = ["WhatsAppClient"]
