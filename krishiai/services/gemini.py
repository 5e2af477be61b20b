"""
Gemini helpers for plant diagnosis, diagnosis chat and crop-detail autofill.

Each helper wraps exactly one `google-genai` call and runs it through
`with_key_rotation`, so a key that has run out of quota is skipped in favour
of the next configured key.
"""
import base64
import binascii
import json
import logging
import os
import re
from io import BytesIO
from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types
from PIL import Image

from .key_rotation import get_gemini_api_keys, with_key_rotation

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
MAX_INLINE_BYTES = 700_000

SUPPORTED_LANGUAGES = {
    "en": "English",
    "hi": "Hindi (हिंदी)",
    "mr": "Marathi (मराठी)",
}

ANALYZE_PROMPT = """Analyze this plant image. Plant type: {plant_type}. Symptoms described: {symptoms}.

Respond with a JSON object containing:
{{
  "diagnosis": "Brief diagnosis of the problem",
  "causes": ["List of potential causes"],
  "treatment": ["List of treatment steps"],
  "prevention": ["List of preventive measures"]
}}

IMPORTANT: Ensure the response is valid JSON. Do not include any text outside the JSON object."""

AUTOFILL_PROMPT = """You are helping a farmer fill in a crop diagnosis form from a photo.
Look at the image and identify the crop and the visible symptoms.

Respond ONLY with a JSON object:
{{
  "cropType": "Name of the crop or plant",
  "symptoms": "One or two sentences describing the visible symptoms (or 'No visible symptoms')"
}}

Write the values in {language_name}."""

_DATA_URL_RE = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")


class InvalidImageError(ValueError):
    pass


def get_model_name() -> str:
    return os.getenv("GEMINI_MODEL", DEFAULT_MODEL)


def strip_data_url(image: str) -> str:
    """Remove a `data:image/...;base64,` prefix if present."""
    return _DATA_URL_RE.sub("", image or "", count=1)


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first `{...}` object in a model reply, ignoring code fences."""
    cleaned = (text or "").strip()
    cleaned = re.sub(r"```(?:json)?\s*", "", cleaned, flags=re.IGNORECASE).strip()
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if not match:
        raise ValueError("No JSON object found in response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON from Gemini response: {e}")
    if not isinstance(data, dict):
        raise ValueError("Gemini response JSON is not an object")
    return data


def _image_part(image_base64: str) -> types.Part:
    try:
        data = base64.b64decode(strip_data_url(image_base64), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImageError("Image is not valid base64 data")
    if not data:
        raise InvalidImageError("Image is empty")
    return types.Part.from_bytes(data=shrink_image(data), mime_type="image/jpeg")


def shrink_image(img_bytes: bytes, max_dim: int = 1200) -> bytes:
    """Re-encode large photos as JPEG so inline uploads stay small.

    Bytes Pillow cannot open are returned unchanged.
    """
    try:
        with Image.open(BytesIO(img_bytes)) as img:
            w, h = img.size
            if len(img_bytes) <= MAX_INLINE_BYTES and max(w, h) <= 1400:
                return img_bytes
            img = img.convert("RGB")
            if max(w, h) > max_dim:
                scale = max_dim / float(max(w, h))
                img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)
            out = BytesIO()
            img.save(out, format="JPEG", quality=75, optimize=True)
    except (OSError, ValueError) as e:
        logger.debug("Leaving image as-is, Pillow could not re-encode it: %s", e)
        return img_bytes
    logger.debug("Re-encoded image for Gemini: %d -> %d bytes", len(img_bytes), out.tell())
    return out.getvalue()


def _generate(contents: Any, model_name: Optional[str] = None, label: str = "gemini") -> str:
    """Run one generate_content call, rotating through the configured keys."""
    name = model_name or get_model_name()

    def attempt(api_key: str) -> str:
        client = genai.Client(api_key=api_key)
        resp = client.models.generate_content(model=name, contents=contents)
        return resp.text

    return with_key_rotation(get_gemini_api_keys(), attempt, label=label)


def generate_text(prompt: str, model_name: Optional[str] = None) -> str:
    return _generate(prompt, model_name=model_name, label="gemini:text")


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, list):
        return value
    return [v for v in [value] if v]


def _structure_from_text(text: str) -> Dict[str, Any]:
    """Best-effort structure for a reply that is not valid JSON."""
    def grab(pattern: str, default: str) -> str:
        m = re.search(pattern, text, re.IGNORECASE)
        return m.group(1) if m and m.group(1) else default

    return {
        "diagnosis": text.split("\n")[0] or "Failed to parse diagnosis",
        "causes": [grab(r"causes?:?\s*(.*)", "Unknown cause")],
        "treatment": [grab(r"treatment:?\s*(.*)", "See diagnosis for details")],
        "prevention": [grab(r"prevent(?:ion)?:?\s*(.*)", "No prevention steps provided")],
    }


def analyze_plant_image(image_base64: str, plant_type: str, symptoms: str) -> Dict[str, Any]:
    """Diagnose a plant photo.

    Returns a dict with `diagnosis` (str) and `causes`, `treatment`,
    `prevention` (lists). Replies that are not JSON are salvaged line by line.
    """
    prompt = ANALYZE_PROMPT.format(plant_type=plant_type, symptoms=symptoms)
    text = _generate([prompt, _image_part(image_base64)], label="gemini:diagnose")

    try:
        parsed = extract_json_object(text)
    except ValueError:
        logger.warning("Failed to parse Gemini analyze response as JSON. Raw response: %s", text[:500])
        return _structure_from_text(text)

    diagnosis = parsed.get("diagnosis")
    return {
        "diagnosis": diagnosis if isinstance(diagnosis, str) else "No diagnosis provided",
        "causes": _as_list(parsed.get("causes")),
        "treatment": _as_list(parsed.get("treatment")),
        "prevention": _as_list(parsed.get("prevention")),
    }


def chat_with_gemini(history: List[Dict[str, str]], message: str, context: Optional[str] = None) -> str:
    """Send `message` in a chat that already contains `history`.

    History items are `{"role": "user"|"assistant", "content": str}`.
    `context` (e.g. the diagnosis being discussed) becomes the system instruction.
    """
    chat_history = [
        types.Content(
            role="model" if m.get("role") in ("assistant", "model") else "user",
            parts=[types.Part(text=m.get("content", ""))],
        )
        for m in history
    ]
    config = types.GenerateContentConfig(system_instruction=context) if context else None
    name = get_model_name()

    def attempt(api_key: str) -> str:
        client = genai.Client(api_key=api_key)
        chat = client.chats.create(model=name, config=config, history=chat_history)
        resp = chat.send_message(message)
        return resp.text

    return with_key_rotation(get_gemini_api_keys(), attempt, label="gemini:chat")


def suggest_crop_details_from_image(image_base64: str, language: str = "en") -> Dict[str, str]:
    """Suggest `cropType` and `symptoms` for the diagnosis form from a photo."""
    language_name = SUPPORTED_LANGUAGES.get(language, SUPPORTED_LANGUAGES["en"])
    prompt = AUTOFILL_PROMPT.format(language_name=language_name)
    text = _generate([prompt, _image_part(image_base64)], label="gemini:autofill")

    data = extract_json_object(text)
    return {
        "cropType": str(data.get("cropType") or "").strip(),
        "symptoms": str(data.get("symptoms") or "").strip(),
    }
