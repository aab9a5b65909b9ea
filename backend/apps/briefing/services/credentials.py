from __future__ import annotations

from typing import Any, MutableMapping, Optional

from apps.ebooks.services.llm import detect_provider, provider_label

SESSION_KEY = "ebook_credential"


class SessionCredentialStore:
    """
    Client-local key-value store for the user's model API key.

    Backed by the request session; with the signed-cookie engine the key lives
    only in the browser's cookie and is never written server-side.
    """

    def __init__(self, session: MutableMapping[str, Any]) -> None:
        self.session = session

    def get(self) -> str:
        return str(self.session.get(SESSION_KEY) or "")

    def set(self, credential: str) -> None:
        key = (credential or "").strip()
        if not key:
            raise ValueError("credential must not be blank")
        self.session[SESSION_KEY] = key

    def clear(self) -> None:
        self.session.pop(SESSION_KEY, None)

    def resolve(self, explicit: Optional[str] = None) -> str:
        """An explicit credential from the request wins over the stored one."""
        return (explicit or "").strip() or self.get()

    def describe(self) -> dict:
        key = self.get()
        if not key:
            return {"configured": False, "provider": None, "hint": ""}
        provider = detect_provider(key)
        return {
            "configured": True,
            "provider": provider,
            "provider_label": provider_label(provider),
            "hint": f"...{key[-4:]}" if len(key) > 8 else "",
        }
