"""
Telegram side of the bridge.

Delivers agent output to private chats with edit-in-place messages, handles
Telegram rate limits, and exposes the bot commands used to drive a session.
"""
