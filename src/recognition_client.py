"""
recognition_client.py

Async client for the business-card recognition provider (Doubao vision
model behind an OpenAI-compatible /chat/completions endpoint).

One call = one image = one network round-trip.  No retries: a failure is
classified and raised to the caller, which records it on the job.

Public API:
    recognize_card(image_bytes, media_type, client=None) → async
        Returns the validated card record dict.
        Raises a RecognitionError subclass on any failure.

Failure classes (kind / HTTP status):
    ConfigurationError  configuration  500   API key missing — nothing sent
    InputError          input          400   no image bytes
    UpstreamError       upstream       provider status, 502 on transport errors
    RecognitionTimeout  timeout        504   wall-clock ceiling elapsed
    ParseError          parse          502   reply was not the expected JSON
"""

import asyncio
import base64
import json
import logging
from typing import Any, Optional

import httpx

from config import (
    DOUBAO_API_KEY,
    DOUBAO_API_URL,
    DOUBAO_MODEL,
    MOCK_RECOGNITION,
    RECOGNITION_TIMEOUT_SECONDS,
)
from validator import CARD_FIELDS, validate_card_record

logger = logging.getLogger(__name__)


# ── Errors ─────────────────────────────────────────────────────────────────────

class RecognitionError(Exception):
    kind = "internal"
    default_status = 500
    default_message = "Failed to recognize image."

    def __init__(
        self,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        api_error: Any = None,
    ) -> None:
        self.message     = message or self.default_message
        self.status_code = status_code or self.default_status
        self.api_error   = api_error
        super().__init__(self.message)

    def describe(self) -> str:
        """Display text stored on the failed job."""
        if self.api_error is None or self.api_error == "":
            return self.message
        if isinstance(self.api_error, (dict, list)):
            detail = json.dumps(self.api_error, ensure_ascii=False)
        else:
            detail = str(self.api_error)
        return f"{self.message}: {detail}"

    def to_response(self) -> dict:
        body: dict = {"error": self.message}
        if self.api_error is not None:
            body["apiError"] = self.api_error
        return body


class ConfigurationError(RecognitionError):
    kind = "configuration"
    default_status = 500
    default_message = "Recognition API key is not configured."


class InputError(RecognitionError):
    kind = "input"
    default_status = 400
    default_message = "No file uploaded."


class UpstreamError(RecognitionError):
    kind = "upstream"
    default_status = 502
    default_message = "Recognition API Error"


class RecognitionTimeout(UpstreamError):
    kind = "timeout"
    default_status = 504
    default_message = "Recognition request timed out."


class ParseError(RecognitionError):
    kind = "parse"
    default_status = 502
    default_message = "Recognition result could not be parsed."


# ── Persistent async HTTP client ───────────────────────────────────────────────
# Single client reused for all calls — avoids TCP handshake overhead per request.
# The overall timeout matches the wall-clock ceiling; asyncio.wait_for in
# recognize_card enforces it end to end (httpx timeouts are per phase).
_http_client: Optional[httpx.AsyncClient] = None


def _get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(RECOGNITION_TIMEOUT_SECONDS, connect=10.0),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
    _http_client = None


# ── Prompt ─────────────────────────────────────────────────────────────────────

CARD_PROMPT = """You are reading a photo of a business card.
Return ONLY a JSON object with exactly these keys:
  "country", "name", "position", "company", "phone"
Every value is a string, or null when the card does not show it.
No explanation. No markdown. No backticks.

phone:
  - Mobile number only. Never a fax or landline if a mobile is present.
  - Format: (+country code)-number, e.g. (+86)-13812345678
  - If the number has no country code, infer the most likely one from the
    address, company and the number's length and prefix.
country:
  - The country the card holder is based in, in the card's language.
Keep every value exactly as printed; do not translate names."""


def _build_payload(image_bytes: bytes, media_type: str) -> dict:
    b64_image = base64.b64encode(image_bytes).decode("utf-8")
    return {
        "model": DOUBAO_MODEL,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": CARD_PROMPT},
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{media_type};base64,{b64_image}"},
                    },
                ],
            },
        ],
    }


# ── Response parsing ───────────────────────────────────────────────────────────

def _upstream_payload(response: httpx.Response) -> Any:
    try:
        data = response.json()
    except ValueError:
        return response.text or None
    if isinstance(data, dict) and "error" in data:
        return data["error"]
    return data


def extract_message_content(envelope: Any) -> str:
    """Pull choices[0].message.content out of the provider envelope."""
    try:
        content = envelope["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        logger.warning(f"Unexpected recognition envelope: {exc!r}")
        raise ParseError() from exc
    if not isinstance(content, str):
        logger.warning(f"Message content is {type(content).__name__}, expected text.")
        raise ParseError()
    return content


def parse_card_content(raw: str) -> dict:
    """
    Parse the model's reply into a validated card record.
    Raises ParseError if it is not a JSON object.
    """
    # Strip accidental markdown fences from response
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        lines   = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning(f"Recognition reply is not JSON: {raw[:200]!r}")
        raise ParseError() from exc

    if not isinstance(data, dict):
        logger.warning(f"Recognition reply is JSON but not an object: {raw[:200]!r}")
        raise ParseError()

    return validate_card_record(data)


# ── Core async call ────────────────────────────────────────────────────────────

async def _post_recognition(
    client: httpx.AsyncClient,
    image_bytes: bytes,
    media_type: str,
) -> dict:
    try:
        response = await client.post(
            DOUBAO_API_URL,
            json=_build_payload(image_bytes, media_type),
            headers={
                "Authorization": f"Bearer {DOUBAO_API_KEY}",
                "Content-Type": "application/json",
            },
        )
    except httpx.TimeoutException as exc:
        raise RecognitionTimeout(api_error=str(exc) or None) from exc
    except httpx.RequestError as exc:
        logger.error(f"Recognition transport error: {exc!r}")
        raise UpstreamError(api_error=str(exc) or type(exc).__name__) from exc

    if response.status_code != 200:
        api_error = _upstream_payload(response)
        logger.error(f"Recognition API HTTP {response.status_code}: {api_error}")
        raise UpstreamError(status_code=response.status_code, api_error=api_error)

    try:
        envelope = response.json()
    except ValueError as exc:
        logger.warning(f"Recognition envelope is not JSON: {response.text[:200]!r}")
        raise ParseError() from exc

    return parse_card_content(extract_message_content(envelope))


# ── Public entry point ─────────────────────────────────────────────────────────

async def recognize_card(
    image_bytes: bytes,
    media_type: str,
    client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """
    Recognise one business card image.

    Args:
        image_bytes: Raw JPEG/PNG bytes.
        media_type:  "image/jpeg" or "image/png" — goes into the data URL.
        client:      Optional httpx client (tests inject a MockTransport one).

    Returns:
        Card record dict with the CARD_FIELDS keys.
    """
    if not DOUBAO_API_KEY and not MOCK_RECOGNITION:
        raise ConfigurationError()

    if not image_bytes:
        raise InputError()

    if MOCK_RECOGNITION:
        logger.info("MOCK_RECOGNITION enabled — skipping provider call.")
        return {col: None for col in CARD_FIELDS}

    client = client or _get_http_client()
    try:
        return await asyncio.wait_for(
            _post_recognition(client, image_bytes, media_type),
            timeout=RECOGNITION_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError as exc:
        logger.error(f"Recognition exceeded {RECOGNITION_TIMEOUT_SECONDS}s ceiling.")
        raise RecognitionTimeout() from exc
