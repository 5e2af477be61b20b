import os
import math
import time
import logging
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import List, Optional, Dict, Any

from . import auth as auth_module
from .database import ChatMessage, Diagnosis, User, get_db, init_db
from .services import agmarknet
from .services.crop_guide import get_crop_guide, list_crop_guides
from .services.gemini import (
    InvalidImageError,
    analyze_plant_image,
    chat_with_gemini,
    suggest_crop_details_from_image,
)
from .services.key_rotation import NoCredentialsError, is_retryable_error
from .services.weather import LocationNotFoundError, WeatherError, weather_report

logger = logging.getLogger(__name__)

app = FastAPI(title="KrishiAI API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_error_envelope(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"status": "error", "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_envelope(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"status": "error", "message": "Invalid request body"})


@app.on_event("startup")
def create_tables_on_startup():
    init_db()


def success(data: Any = None, **extra) -> Dict[str, Any]:
    out: Dict[str, Any] = {"status": "success"}
    if data is not None:
        out["data"] = data
    out.update(extra)
    return out


def ai_http_error(e: Exception) -> HTTPException:
    """Translate a failure from a Gemini-backed helper into an HTTP error."""
    if isinstance(e, NoCredentialsError):
        return HTTPException(status_code=503, detail="AI service is not configured")
    if isinstance(e, InvalidImageError):
        return HTTPException(status_code=400, detail=str(e))
    if is_retryable_error(e):
        return HTTPException(status_code=429, detail="AI service is busy, please try again later")
    return HTTPException(status_code=502, detail=str(e) or "AI service error")


class RegisterRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class DiagnoseRequest(BaseModel):
    image: Optional[str] = None
    cropType: Optional[str] = None
    symptoms: Optional[str] = None
    language: Optional[str] = "en"


class DebugDiagnoseRequest(BaseModel):
    image: Optional[str] = None
    plantType: Optional[str] = "Unknown"
    symptoms: Optional[str] = "None"


class ChatRequest(BaseModel):
    diagnosisId: Optional[int] = None
    message: Optional[str] = None


class AutofillRequest(BaseModel):
    image: Optional[str] = None
    language: Optional[str] = "en"


def _clip_list(items: Any, limit: int = 10, width: int = 200) -> List[str]:
    if not isinstance(items, list):
        return []
    return [str(item)[:width] for item in items][:limit]


def message_to_dict(m: ChatMessage) -> Dict[str, Any]:
    return {
        "id": m.id,
        "diagnosisId": m.diagnosis_id,
        "role": m.role,
        "content": m.content,
        "createdAt": m.created_at.isoformat() if m.created_at else None,
    }


def diagnosis_to_dict(d: Diagnosis) -> Dict[str, Any]:
    return {
        "id": d.id,
        "cropType": d.crop_type,
        "symptoms": d.symptoms,
        "imageUrl": d.image_url,
        "diagnosis": d.diagnosis,
        "severity": d.severity,
        "confidence": d.confidence,
        "estimatedCost": d.estimated_cost,
        "language": d.language,
        "causes": d.causes or [],
        "treatment": d.treatment or [],
        "prevention": d.prevention or [],
        "createdAt": d.created_at.isoformat() if d.created_at else None,
        "messages": [message_to_dict(m) for m in d.messages],
    }


def diagnosis_context(d: Diagnosis) -> str:
    return (
        "You are an agricultural expert helping an Indian farmer follow up on a crop diagnosis.\n"
        f"Crop: {d.crop_type}\n"
        f"Reported symptoms: {d.symptoms}\n"
        f"Diagnosis: {d.diagnosis or 'Not available'}\n"
        f"Causes: {'; '.join(d.causes or []) or 'Not available'}\n"
        f"Treatment: {'; '.join(d.treatment or []) or 'Not available'}\n"
        f"Prevention: {'; '.join(d.prevention or []) or 'Not available'}\n"
        "Answer practically and concisely."
    )


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.post("/api/auth/register", status_code=201)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
    first = (req.firstName or "").strip()
    last = (req.lastName or "").strip()
    name = f"{first} {last}".strip() or (req.name or "").strip()
    if not req.email or not req.password or not name:
        raise HTTPException(status_code=400, detail="Missing required registration fields")
    try:
        user = auth_module.create_user(db, req.email, req.password, name)
    except ValueError as e:
        if str(e) == "user_exists":
            raise HTTPException(status_code=400, detail="User already exists")
        raise
    return success(auth_module.user_to_dict(user), message="User created successfully")


@app.post("/api/auth/login")
def login(req: LoginRequest, db: Session = Depends(get_db)):
    if not req.email or not req.password:
        raise HTTPException(status_code=400, detail="Missing credentials")
    user = auth_module.authenticate_user(db, req.email, req.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = auth_module.create_access_token(user)
    return success({"token": token, "user": auth_module.user_to_dict(user)})


@app.post("/api/diagnose")
def diagnose(req: DiagnoseRequest, user: User = Depends(auth_module.require_user), db: Session = Depends(get_db)):
    if not req.image or not req.cropType or not req.symptoms:
        raise HTTPException(status_code=400, detail="Missing required fields")

    try:
        ai_result = analyze_plant_image(req.image, req.cropType, req.symptoms)
    except Exception as e:
        logger.exception("Diagnosis error")
        raise ai_http_error(e)

    item = Diagnosis(
        user_id=user.id,
        crop_type=req.cropType[:100],
        symptoms=req.symptoms[:500],
        image_url=f"plant-image-{int(time.time() * 1000)}.jpg",
        diagnosis=str(ai_result["diagnosis"])[:1000] if ai_result.get("diagnosis") else None,
        severity=ai_result.get("severity") or "moderate",
        confidence=ai_result.get("confidence") or 75,
        estimated_cost=ai_result.get("estimatedCost"),
        language=req.language or "en",
        causes=_clip_list(ai_result.get("causes")),
        treatment=_clip_list(ai_result.get("treatment")),
        prevention=_clip_list(ai_result.get("prevention")),
    )
    try:
        db.add(item)
        db.commit()
        db.refresh(item)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to save diagnosis for user %s", user.id)
        raise HTTPException(status_code=500, detail="Failed to save diagnosis")

    return success({
        "id": item.id,
        "diagnosis": ai_result.get("diagnosis"),
        "causes": ai_result.get("causes") or [],
        "treatment": ai_result.get("treatment") or [],
        "prevention": ai_result.get("prevention") or [],
        "messages": [],
    })


@app.post("/api/diagnose/debug")
def diagnose_debug(req: DebugDiagnoseRequest, user: User = Depends(auth_module.require_user)):
    """Run the image analysis without storing anything."""
    if not req.image:
        raise HTTPException(status_code=400, detail="Missing image in body")
    try:
        result = analyze_plant_image(req.image, req.plantType or "Unknown", req.symptoms or "None")
    except Exception as e:
        logger.error("Gemini debug call failed: %s", e)
        raise ai_http_error(e)
    return {"status": "success", "raw": result, "parsed": result}


@app.post("/api/diagnose/chat")
def diagnose_chat(req: ChatRequest, user: User = Depends(auth_module.require_user), db: Session = Depends(get_db)):
    if not req.diagnosisId or not req.message:
        raise HTTPException(status_code=400, detail="Missing fields")

    item = db.query(Diagnosis).filter(Diagnosis.id == req.diagnosisId, Diagnosis.user_id == user.id).first()
    if not item:
        raise HTTPException(status_code=404, detail="Not found")

    history = [{"role": m.role, "content": m.content} for m in item.messages]

    try:
        reply = chat_with_gemini(history, req.message, context=diagnosis_context(item))
    except Exception as e:
        logger.exception("Chat error for diagnosis %s", item.id)
        raise ai_http_error(e)

    # stored only once the reply exists
    user_msg = ChatMessage(diagnosis_id=item.id, role="user", content=req.message)
    assistant_msg = ChatMessage(diagnosis_id=item.id, role="assistant", content=reply)
    db.add(user_msg)
    db.add(assistant_msg)
    db.commit()
    db.refresh(user_msg)
    db.refresh(assistant_msg)

    return success({
        "reply": reply,
        "userMessage": message_to_dict(user_msg),
        "assistantMessage": message_to_dict(assistant_msg),
    })


@app.post("/api/diagnose/autofill")
def diagnose_autofill(req: AutofillRequest, user: User = Depends(auth_module.require_user)):
    if not req.image:
        raise HTTPException(status_code=400, detail="Image is required")
    try:
        suggestion = suggest_crop_details_from_image(req.image, str(req.language or "en"))
    except Exception as e:
        logger.exception("Autofill crop details error")
        raise ai_http_error(e)
    return success(suggestion)


@app.get("/api/diagnose/history")
def diagnose_history(user: User = Depends(auth_module.require_user), db: Session = Depends(get_db)):
    items = (
        db.query(Diagnosis)
        .filter(Diagnosis.user_id == user.id)
        .order_by(Diagnosis.created_at.desc(), Diagnosis.id.desc())
        .all()
    )
    return success(items=[diagnosis_to_dict(d) for d in items])


@app.get("/api/crop-guide")
def crop_guide(crop: Optional[str] = None, user: User = Depends(auth_module.require_user), db: Session = Depends(get_db)):
    try:
        if crop:
            guide, source = get_crop_guide(db, crop)
            return success(guide, source=source)
        guides, source = list_crop_guides(db)
        return success(guides, source=source)
    except SQLAlchemyError:
        logger.exception("Crop guide API error")
        raise HTTPException(status_code=500, detail="Failed to fetch crop guide")
    except Exception as e:
        logger.exception("Crop guide generation failed for %s", crop)
        raise ai_http_error(e)


def _positive_float(raw: Optional[str]) -> float:
    """Parse a query value; anything not a finite number above zero gives 0."""
    try:
        value = float(raw or 0)
    except ValueError:
        return 0.0
    if not math.isfinite(value) or value <= 0:
        return 0.0
    return value


@app.get("/api/market-prices")
def market_prices(
    action: str = "list",
    crop: Optional[str] = None,
    state: Optional[str] = None,
    quantity: Optional[str] = None,
    cost: Optional[str] = None,
    user: User = Depends(auth_module.require_user),
):
    if action == "list":
        return success(agmarknet.get_market_prices(crop or None, state or None))

    if action == "trends":
        if not crop or not state:
            raise HTTPException(status_code=400, detail="Crop name and state are required for trends")
        trends = agmarknet.get_price_trends(crop, state, 30)
        change = agmarknet.get_price_change(trends[-1]["price"], trends[0]["price"]) if trends else None
        return success(trends, change=change)

    if action == "calculate":
        qty = _positive_float(quantity)
        cultivation_cost = _positive_float(cost)
        if not crop or not qty or not cultivation_cost:
            raise HTTPException(status_code=400, detail="Crop name, quantity, and cost are required for calculation")
        estimate = agmarknet.calculate_profit_estimate(crop, qty, cultivation_cost)
        estimate["formattedRevenue"] = agmarknet.format_currency(estimate["estimatedRevenue"])
        estimate["formattedProfit"] = agmarknet.format_currency(estimate["profit"])
        return success(estimate)

    if action == "recommendations":
        if not state:
            raise HTTPException(status_code=400, detail="State is required for recommendations")
        return success(agmarknet.get_crop_recommendations(state))

    if action == "popular":
        return success(agmarknet.POPULAR_CROPS)

    raise HTTPException(status_code=400, detail="Invalid action parameter")


@app.get("/api/weather")
def weather(location: Optional[str] = None, crop: Optional[str] = None, user: User = Depends(auth_module.require_user)):
    if not location:
        raise HTTPException(status_code=400, detail="Location parameter is required")
    try:
        return success(weather_report(location, crop))
    except LocationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WeatherError as e:
        logger.error("Weather API error for %s: %s", location, e)
        raise HTTPException(status_code=502, detail=str(e))


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
