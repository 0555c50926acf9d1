"""
Identity-document extraction
============================

Reads identity fields out of an ID card or passport image with Mistral's
vision chat completions. The call is slow and may fail; every failure is
raised as ExtractionFailed and the caller decides whether it is fatal.
"""
import base64
import json
import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from apprentice_tracker.config import Settings
from apprentice_tracker.services.errors import ExtractionFailed, ValidationError

logger = logging.getLogger(__name__)

JPEG_MIME = "image/jpeg"
PNG_MIME = "image/png"

SYSTEM_PROMPT = (
    "Tu es un système d'extraction OCR spécialisé dans les pièces d'identité françaises."
)

USER_PROMPT = (
    "Extrait les informations d'une pièce d'identité ou d'un passeport français. "
    "Fournis seulement un objet JSON avec ces champs (ceux que tu peux trouver) : "
    "firstName, lastName, birthDate (format YYYY-MM-DD), address, idNumber, "
    "nationality, gender (M/F). Assure-toi que les noms sont en majuscules. "
    "Ne réponds qu'avec le JSON, sans aucun texte autour."
)


class IdentityFields(BaseModel):
    """Fields read off an identity document. Anything unreadable is None."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    birth_date: Optional[str] = Field(None, alias="birthDate")
    address: Optional[str] = None
    id_number: Optional[str] = Field(None, alias="idNumber")
    nationality: Optional[str] = None
    gender: Optional[str] = None

    def to_json(self) -> str:
        """Serialized form stored on the document (camelCase, nulls dropped)."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class IdentityExtractor(Protocol):
    def extract(self, content: bytes, mime_type: str) -> IdentityFields:
        ...


def detect_image_mime(content: bytes) -> Optional[str]:
    """JPEG or PNG by magic bytes, else None."""
    if content.startswith(b"\xff\xd8\xff"):
        return JPEG_MIME
    if content.startswith(b"\x89PNG\r\n\x1a\n"):
        return PNG_MIME
    return None


def require_image(content: bytes) -> str:
    mime_type = detect_image_mime(content)
    if mime_type is None:
        raise ValidationError("Only JPEG and PNG images can be used for extraction")
    return mime_type


def parse_identity_content(content) -> IdentityFields:
    """Turn the model's reply (JSON text, or an already-decoded object) into fields."""
    if isinstance(content, str):
        try:
            content = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ExtractionFailed("Failed to parse JSON from Mistral API response") from exc

    if not isinstance(content, dict):
        raise ExtractionFailed("Mistral API response is not a JSON object")

    # Models sometimes answer with numbers or nulls; keep only usable strings
    cleaned = {
        key: str(value).strip()
        for key, value in content.items()
        if value is not None and not isinstance(value, (dict, list)) and str(value).strip()
    }
    try:
        return IdentityFields.model_validate(cleaned)
    except PydanticValidationError as exc:
        raise ExtractionFailed("Unexpected fields in Mistral API response") from exc


class MistralIdExtractor:
    """
    Synchronous client for Mistral vision extraction.

    `transport` lets tests substitute an httpx.MockTransport.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "mistral-small-latest",
        base_url: str = "https://api.mistral.ai/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "MistralIdExtractor":
        return cls(
            api_key=settings.mistral_api_key,
            model=settings.mistral_model,
            base_url=settings.mistral_base_url,
            timeout=settings.ocr_timeout,
        )

    def _payload(self, content: bytes, mime_type: str) -> dict:
        encoded = base64.b64encode(content).decode("ascii")
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": USER_PROMPT},
                        {"type": "image_url", "image_url": f"data:{mime_type};base64,{encoded}"},
                    ],
                },
            ],
            "temperature": 0.1,
            "max_tokens": 500,
            "response_format": {"type": "json_object"},
        }

    def extract(self, content: bytes, mime_type: str) -> IdentityFields:
        """
        Send one image and return the fields read from it.

        Raises:
            ExtractionFailed: missing credentials, timeout, HTTP error,
                or a reply that is not a JSON object
        """
        if not self.api_key:
            raise ExtractionFailed("Missing Mistral API key")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    json=self._payload(content, mime_type),
                    headers=headers,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as exc:
            logger.error(f"Mistral OCR timed out after {self.timeout}s")
            raise ExtractionFailed("Mistral API request timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(f"Mistral API error: {exc.response.status_code}")
            raise ExtractionFailed(
                f"HTTP {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(f"Mistral OCR request failed: {exc}")
            raise ExtractionFailed(f"Mistral API request failed: {exc}") from exc
        except ValueError as exc:
            raise ExtractionFailed("Mistral API returned a non-JSON body") from exc

        try:
            reply = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            logger.error(f"Mistral response missing content: {exc}")
            raise ExtractionFailed("No content returned from Mistral API") from exc

        if not reply:
            raise ExtractionFailed("No content returned from Mistral API")

        return parse_identity_content(reply)
