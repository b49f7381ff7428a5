"""
Store assistant backed by the Groq chat completions API.

The assistant answers only questions about books in the catalog. Every
failure is turned into a reply string so the chat route always has
something to show.
"""
import logging
import os
from typing import Any, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)

GROQ_API_URL = "https://api.groq.com/openai/v1/chat/completions"
GROQ_MODEL = "llama-3.3-70b-versatile"
TEMPERATURE = 0.7
MAX_TOKENS = 800
TIMEOUT_SECONDS = 30.0

MISSING_KEY_REPLY = """\
How to get a free Groq API key:
1. Go to https://console.groq.com/keys
2. Sign in with Google or GitHub
3. Click "Create API Key"
4. Set it as the GROQ_API_KEY environment variable and restart the server"""

INVALID_KEY_REPLY = "The API key is invalid. Create a new one at https://console.groq.com/keys"
RATE_LIMIT_REPLY = "Rate limit of 30 requests per minute exceeded. Please wait a minute."


def format_price(price: float) -> str:
    return f"{price:,.0f} ₫".replace(",", ".")


def build_system_prompt(books: Iterable[Dict[str, Any]]) -> str:
    lines = ["Here is the list of books currently in the store:"]
    for i, book in enumerate(books, start=1):
        lines.append("")
        lines.append(f"{i}. Title: {book.get('title', '')}")
        lines.append(f"   Author: {book.get('author', '')}")
        lines.append(f"   Category: {book.get('category', '')}")
        lines.append(f"   Description: {book.get('description') or ''}")
        lines.append(f"   Price: {format_price(float(book.get('price', 0)))}")
        lines.append(f"   Rating: {float(book.get('rating', 0)):.1f}/5.0")
        lines.append(f"   In stock: {book.get('quantity', 0)}")
    catalog = "\n".join(lines)

    return f"""You are the AI assistant of the Bookstore.
IMPORTANT: only answer questions about:
- suggesting books from the store
- book details (price, author, description, rating)
- comparing books in the list
- finding books by category, author or price
- recommending books that fit the user's taste

If the user asks about anything unrelated to the books in the store,
politely decline and steer them back to books.

{catalog}

Keep answers short, friendly and accurate."""


class ChatAssistant:
    def __init__(self, api_key: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.api_key = api_key if api_key is not None else os.getenv("GROQ_API_KEY", "")
        self.client = client

    def build_payload(self, prompt: str, books: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": build_system_prompt(books)},
            {"role": "user", "content": prompt},
        ]
        return {"model": GROQ_MODEL, "messages": messages, "temperature": TEMPERATURE, "max_tokens": MAX_TOKENS}

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if self.client is not None:
            return self.client.post(GROQ_API_URL, headers=headers, json=payload)
        with httpx.Client(timeout=TIMEOUT_SECONDS) as client:
            return client.post(GROQ_API_URL, headers=headers, json=payload)

    def ask(self, prompt: str, books: Iterable[Dict[str, Any]]) -> str:
        if not self.api_key.strip():
            return MISSING_KEY_REPLY

        try:
            response = self._post(self.build_payload(prompt, books))
        except httpx.HTTPError as e:
            logger.warning("Chat request failed: %s", e)
            return f"Connection error: {e}"

        if response.is_success:
            try:
                return response.json()["choices"][0]["message"]["content"].strip()
            except (ValueError, KeyError, IndexError, TypeError) as e:
                logger.warning("Unexpected chat response: %s", e)
                return f"Error {response.status_code}: {response.text[:100]}"
        if response.status_code == 401:
            return INVALID_KEY_REPLY
        if response.status_code == 429:
            return RATE_LIMIT_REPLY
        logger.warning("Chat API returned %s", response.status_code)
        return f"Error {response.status_code}: {response.text[:100]}"
