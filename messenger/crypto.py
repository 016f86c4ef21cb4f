"""
Pluggable message body transform.

The stores only ever see what ``encrypt`` returns; readers get it back through
``decrypt``. Both are keyed by conversation so an implementation can hold one
key per conversation.
"""

from typing import Protocol


class MessageCrypto(Protocol):
    def encrypt(self, conversation_id: int, plaintext: str) -> str:
        ...

    def decrypt(self, conversation_id: int, ciphertext: str) -> str:
        ...


class NoopMessageCrypto:
    """Identity transform; bodies are stored as sent."""

    def encrypt(self, conversation_id: int, plaintext: str) -> str:
        return plaintext

    def decrypt(self, conversation_id: int, ciphertext: str) -> str:
        return ciphertext
