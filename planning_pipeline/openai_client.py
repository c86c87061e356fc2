"""
OpenAI client factory.

A caller-supplied key (e.g. a subscriber's own key) always gets a fresh client;
otherwise one client is cached per server key.
"""
from typing import Optional

from openai import AsyncOpenAI

from .config import get_config

_cached_client: Optional[AsyncOpenAI] = None
_cached_client_api_key: Optional[str] = None


def get_openai_client(user_api_key: Optional[str] = None) -> AsyncOpenAI:
    global _cached_client, _cached_client_api_key

    if user_api_key:
        return AsyncOpenAI(api_key=user_api_key)

    api_key = get_config().openai_api_key
    if not api_key:
        raise ValueError("OPENAI_API_KEY is not configured.")

    if _cached_client is not None and _cached_client_api_key == api_key:
        return _cached_client

    _cached_client = AsyncOpenAI(api_key=api_key)
    _cached_client_api_key = api_key
    return _cached_client
