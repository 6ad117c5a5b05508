"""
Process entry points for the bot.

Modules:
- handler: `matrix-bot-bootstrap` command line (setup, run, logout)
"""

__all__ = [
    "handler",
]
