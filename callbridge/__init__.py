"""callbridge - outbound calls, spoken messages and phone conversations for agents."""

__version__ = "0.1.0"
__logo__ = "☎"
