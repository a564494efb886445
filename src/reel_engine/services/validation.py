"""Kind-specific payload validation for job submission."""

from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from reel_engine.core.errors import ValidationFailedError
from reel_engine.core.jobs import JobKind

REQUIRED_IMAGE_COUNT = 3

PLATFORMS = ("youtube", "instagram", "tiktok")
IMAGE_OPERATIONS = ("remove_background", "enhance", "create_thumbnail")
# Spellings accepted from older clients
OPERATION_ALIASES = {"create_thumbnails": "create_thumbnail"}

# 1 is most urgent
MIN_PRIORITY = 1
MAX_PRIORITY = 10


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def parse_kind(kind: Any) -> JobKind:
    try:
        return JobKind(kind)
    except ValueError:
        supported = ", ".join(k.value for k in JobKind)
        raise ValidationFailedError(
            f"Unsupported job kind '{kind}'. Supported kinds: {supported}",
            code="UNSUPPORTED_KIND",
        )


def validate_scheduling(priority: Optional[int], delay_ms: int) -> None:
    if delay_ms < 0:
        raise ValidationFailedError("delayMs must be non-negative", code="INVALID_FIELD", field="delayMs")
    if priority is not None and not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValidationFailedError(
            f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}", code="INVALID_FIELD", field="priority"
        )


def _choice(payload: Dict[str, Any], key: str, allowed: tuple, default: str) -> str:
    value = payload.get(key) or default
    if value not in allowed:
        raise ValidationFailedError(
            f"Invalid {key} '{value}'. Allowed: {', '.join(allowed)}",
            code="INVALID_FIELD",
            field=key,
        )
    return value


def validate_video_generation(payload: Dict[str, Any]) -> Dict[str, Any]:
    marketing_idea = payload.get("marketing_idea")
    image_urls = payload.get("image_urls")

    missing = []
    if not marketing_idea or not str(marketing_idea).strip():
        missing.append("marketing_idea")
    if not image_urls:
        missing.append("image_urls")
    if missing:
        raise ValidationFailedError(
            f"Missing required fields: {', '.join(missing)}",
            code="MISSING_FIELDS",
            fields=missing,
        )

    if not isinstance(image_urls, list) or len(image_urls) != REQUIRED_IMAGE_COUNT:
        count = len(image_urls) if isinstance(image_urls, list) else 1
        raise ValidationFailedError(
            f"Exactly {REQUIRED_IMAGE_COUNT} image URLs are required, got {count}",
            code="INVALID_ITEM_COUNT",
            expected=REQUIRED_IMAGE_COUNT,
            received=count,
        )

    invalid: List[Any] = [url for url in image_urls if not is_valid_url(url)]
    if invalid:
        raise ValidationFailedError(
            "One or more image URLs are invalid",
            code="INVALID_URLS",
            invalidUrls=invalid,
        )

    return {
        "marketing_idea": str(marketing_idea).strip(),
        "image_urls": list(image_urls),
        "style": str(payload.get("style") or "cinematic"),
        "theme": str(payload.get("theme") or "family"),
        "platform": _choice(payload, "platform", PLATFORMS, "youtube"),
    }


def validate_image_processing(payload: Dict[str, Any]) -> Dict[str, Any]:
    image_url = payload.get("image_url")
    missing = [key for key in ("image_url", "operation") if not payload.get(key)]
    if missing:
        raise ValidationFailedError(
            f"Missing required fields: {', '.join(missing)}",
            code="MISSING_FIELDS",
            fields=missing,
        )
    if not is_valid_url(image_url):
        raise ValidationFailedError("Image URL is invalid", code="INVALID_URLS", invalidUrls=[image_url])

    operation = payload.get("operation")
    if isinstance(operation, str):
        operation = OPERATION_ALIASES.get(operation, operation)
    operation = _choice({"operation": operation}, "operation", IMAGE_OPERATIONS, "enhance")

    options = payload.get("options") or {}
    if not isinstance(options, dict):
        raise ValidationFailedError("options must be an object", code="INVALID_FIELD", field="options")
    cleaned: Dict[str, Any] = {}
    for key in ("width", "height"):
        if key in options:
            value = options[key]
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValidationFailedError(
                    f"options.{key} must be a positive integer", code="INVALID_FIELD", field=f"options.{key}"
                )
            cleaned[key] = value
    if "quality" in options:
        if not isinstance(options["quality"], str):
            raise ValidationFailedError("options.quality must be a string", code="INVALID_FIELD", field="options.quality")
        cleaned["quality"] = options["quality"]

    return {"image_url": image_url, "operation": operation, "options": cleaned}


VALIDATORS = {
    JobKind.VIDEO_GENERATION: validate_video_generation,
    JobKind.IMAGE_PROCESSING: validate_image_processing,
}


def validate_payload(kind: JobKind, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate and normalize a payload; returns the payload stored on the job."""
    if payload is not None and not isinstance(payload, dict):
        raise ValidationFailedError("payload must be an object", code="INVALID_FIELD", field="payload")
    return VALIDATORS[kind](payload or {})
