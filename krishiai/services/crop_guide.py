"""
Crop cultivation guides.

Guides live in the `crop_guides` table. A request for a crop that is not
stored yet asks Gemini to write one, stores it, and serves it from then on.
"""
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import CropGuide
from .gemini import extract_json_object, generate_text

logger = logging.getLogger(__name__)

# (response key, model column, default when the model omits it)
GUIDE_FIELDS = [
    ("overview", "overview", None),
    ("climate", "climate", "Climate information not available."),
    ("soilType", "soil_type", "Soil type information not available."),
    ("sowing", "sowing", "Sowing information not available."),
    ("irrigation", "irrigation", "Irrigation information not available."),
    ("fertilizer", "fertilizer", "Fertilizer information not available."),
    ("pests", "pests", "Pest management information not available."),
    ("diseases", "diseases", "Disease management information not available."),
    ("harvesting", "harvesting", "Harvesting information not available."),
    ("yield", "yield_info", "Yield information not available."),
]

GUIDE_PROMPT = """Generate a comprehensive farming guide for {crop} in India. You MUST respond ONLY in the exact JSON format below. Do not include any text before or after the JSON:

{{
  "overview": "Brief description of the crop, its importance, and main uses (2-3 sentences)",
  "climate": "Suitable climate conditions including temperature range (in Celsius), humidity, and best season for cultivation",
  "soilType": "Best soil types, pH range (e.g., 6.0-7.5), and soil preparation tips",
  "sowing": "Sowing season, seed rate per acre/hectare, spacing between plants and rows, sowing depth",
  "irrigation": "Water requirements, irrigation frequency, best irrigation methods, critical stages requiring water",
  "fertilizer": "NPK requirements, recommended fertilizers, organic options, application timing and method",
  "pests": "List of 4-5 common pests with their symptoms and control measures",
  "diseases": "List of 4-5 common diseases with their symptoms and treatment",
  "harvesting": "When to harvest (maturity indicators), harvesting methods, post-harvest handling",
  "yield": "Expected yield per acre and per hectare under good management"
}}

Include both English and Hindi (in parentheses) for key terms where helpful."""

POPULAR_CROPS_OVERVIEW = [
    {"id": "1", "cropName": "Wheat", "overview": "Major cereal crop grown in winter season (Rabi). Essential for making flour, bread, and chapati.", "imageUrl": None, "yield": "40-50 quintals/hectare"},
    {"id": "2", "cropName": "Rice", "overview": "Staple food crop requiring high water. Grown extensively during monsoon (Kharif) season.", "imageUrl": None, "yield": "50-60 quintals/hectare"},
    {"id": "3", "cropName": "Cotton", "overview": 'Important cash crop for textile industry. Known as "White Gold" of agriculture.', "imageUrl": None, "yield": "20-25 quintals/hectare"},
    {"id": "4", "cropName": "Sugarcane", "overview": "Commercial crop for sugar production. Long duration crop (12-18 months).", "imageUrl": None, "yield": "700-900 quintals/hectare"},
    {"id": "5", "cropName": "Maize", "overview": "Versatile crop used for food, feed, and industrial purposes. Can be grown in all seasons.", "imageUrl": None, "yield": "60-70 quintals/hectare"},
    {"id": "6", "cropName": "Potato", "overview": "High-value vegetable crop. Most widely consumed vegetable in India.", "imageUrl": None, "yield": "250-300 quintals/hectare"},
    {"id": "7", "cropName": "Tomato", "overview": "Popular vegetable with good market demand. Requires moderate temperatures for best yield.", "imageUrl": None, "yield": "300-400 quintals/hectare"},
    {"id": "8", "cropName": "Onion", "overview": "Essential vegetable with export potential. Stores well and has good shelf life.", "imageUrl": None, "yield": "200-250 quintals/hectare"},
    {"id": "9", "cropName": "Soybean", "overview": "Important oilseed and protein crop. Good for crop rotation and soil health.", "imageUrl": None, "yield": "15-20 quintals/hectare"},
    {"id": "10", "cropName": "Groundnut", "overview": "Major oilseed crop also known as peanut. Used for oil extraction and food.", "imageUrl": None, "yield": "20-25 quintals/hectare"},
    {"id": "11", "cropName": "Mustard", "overview": "Important Rabi oilseed crop. Used for oil and as condiment in Indian cuisine.", "imageUrl": None, "yield": "15-18 quintals/hectare"},
    {"id": "12", "cropName": "Chickpea", "overview": "Major pulse crop (Chana). High protein content and drought tolerant.", "imageUrl": None, "yield": "15-20 quintals/hectare"},
]


def extract_section(text: str, section_name: str) -> str:
    """Pull one guide section out of free text; empty string when not found."""
    name = re.escape(section_name)
    patterns = [
        re.compile(rf'"?{name}"?\s*[:\-]\s*"?([^"\n]+(?:\n(?![A-Z][a-z]+:)[^"\n]+)*)"?', re.IGNORECASE),
        re.compile(rf'"{name}"\s*:\s*"([^"]+)"', re.IGNORECASE),
        re.compile(rf"#+\s*{name}[^\n]*\n([^#]+)", re.IGNORECASE),
        re.compile(rf"{name}[:\s]+(.+?)(?=\n[A-Z]|$)", re.IGNORECASE | re.DOTALL),
    ]
    for regex in patterns:
        m = regex.search(text)
        if m and m.group(1):
            return re.sub(r"^[\"']|[\"']$", "", m.group(1).strip())
    return ""


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _base_guide(crop_name: str) -> Dict[str, Any]:
    now = _now_iso()
    return {
        "id": "ai-generated",
        "cropName": crop_name,
        "videoUrls": [],
        "imageUrl": None,
        "language": "en",
        "createdAt": now,
        "updatedAt": now,
    }


def generate_crop_guide(crop_name: str) -> Dict[str, Any]:
    text = generate_text(GUIDE_PROMPT.format(crop=crop_name))
    guide = _base_guide(crop_name)

    try:
        parsed = extract_json_object(text)
    except ValueError as e:
        logger.warning("Error parsing AI crop guide for %s: %s", crop_name, e)
        logger.debug("Raw crop guide response: %s", text)
        for key, _, _ in GUIDE_FIELDS:
            value = extract_section(text, key)
            if not value and key == "soilType":
                value = extract_section(text, "soil")
            if not value and key == "overview":
                value = f"{crop_name} is an important crop grown in India."
            guide[key] = value or "Information being generated."
        return guide

    for key, _, default in GUIDE_FIELDS:
        if key == "overview":
            default = f"{crop_name} is a crop grown in India. Information being generated."
        value = parsed.get(key)
        if isinstance(value, (list, dict)):
            value = "; ".join(str(v) for v in value) if isinstance(value, list) else str(value)
        guide[key] = value or default
    return guide


def guide_to_dict(row: CropGuide) -> Dict[str, Any]:
    out = {"id": row.id, "cropName": row.crop_name}
    for key, column, _ in GUIDE_FIELDS:
        out[key] = getattr(row, column)
    out.update({
        "videoUrls": row.video_urls or [],
        "imageUrl": row.image_url,
        "language": row.language,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    })
    return out


def _find_guide(db: Session, crop_name: str) -> Optional[CropGuide]:
    return db.query(CropGuide).filter(CropGuide.crop_name == crop_name).first()


def get_crop_guide(db: Session, crop_name: str) -> Tuple[Dict[str, Any], str]:
    """Return `(guide, source)` where source is "database" or "ai"."""
    row = _find_guide(db, crop_name)
    if row:
        return guide_to_dict(row), "database"

    generated = generate_crop_guide(crop_name)
    row = CropGuide(crop_name=crop_name, video_urls=[], language=generated.get("language", "en"))
    for key, column, _ in GUIDE_FIELDS:
        setattr(row, column, generated.get(key))
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # another request stored this crop first
        db.rollback()
        existing = _find_guide(db, crop_name)
        if existing:
            return guide_to_dict(existing), "database"
        logger.warning("Crop guide for %s conflicted but could not be re-read", crop_name)
        return generated, "ai"
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Failed to store generated crop guide for %s: %s", crop_name, e)
        return generated, "ai"

    db.refresh(row)
    return guide_to_dict(row), "ai"


def list_crop_guides(db: Session) -> Tuple[List[Dict[str, Any]], str]:
    rows = db.query(CropGuide).order_by(CropGuide.crop_name.asc()).all()
    if not rows:
        return POPULAR_CROPS_OVERVIEW, "default"
    return [
        {"id": r.id, "cropName": r.crop_name, "overview": r.overview, "imageUrl": r.image_url, "yield": r.yield_info}
        for r in rows
    ], "database"
