import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from krishiai import main
from krishiai.services import agmarknet
from krishiai.services.gemini import InvalidImageError
from krishiai.services.key_rotation import NoCredentialsError
from krishiai.services.weather import LocationNotFoundError, WeatherError

ANALYSIS = {
    "diagnosis": "Early blight",
    "causes": ["Alternaria solani"],
    "treatment": ["Spray mancozeb 2g/L"],
    "prevention": ["Rotate crops"],
}

DIAGNOSE_BODY = {"image": "aGVsbG8=", "cropType": "Tomato", "symptoms": "brown rings on leaves", "language": "en"}


@pytest.fixture
def fake_analysis(monkeypatch):
    calls = []

    def analyze(image, crop_type, symptoms):
        calls.append((image, crop_type, symptoms))
        return dict(ANALYSIS)

    monkeypatch.setattr(main, "analyze_plant_image", analyze)
    return calls


def _diagnose(client, headers):
    resp = client.post("/api/diagnose", json=DIAGNOSE_BODY, headers=headers)
    assert resp.status_code == 200
    return resp.json()["data"]["id"]


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_register_and_login(client):
    resp = client.post("/api/auth/register", json={
        "email": "asha@example.com", "password": "pw", "firstName": "Asha", "lastName": "Patil",
    })
    assert resp.status_code == 201
    assert resp.json()["data"]["name"] == "Asha Patil"

    resp = client.post("/api/auth/login", json={"email": "asha@example.com", "password": "pw"})
    body = resp.json()
    assert body["status"] == "success"
    assert body["data"]["user"]["email"] == "asha@example.com"
    assert body["data"]["token"]


def test_register_duplicate_and_missing_fields(client, auth_headers):
    resp = client.post("/api/auth/register", json={"email": "farmer@example.com", "password": "x", "name": "Dup"})
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "User already exists"}

    resp = client.post("/api/auth/register", json={"email": "new@example.com"})
    assert resp.status_code == 400


def test_login_with_wrong_password(client, auth_headers):
    resp = client.post("/api/auth/login", json={"email": "farmer@example.com", "password": "wrong"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid credentials"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer not-a-token"}])
def test_protected_routes_require_token(client, headers):
    resp = client.get("/api/diagnose/history", headers=headers)
    assert resp.status_code == 401
    assert resp.json() == {"status": "error", "message": "Authentication required"}


def test_diagnose_persists_and_appears_in_history(client, auth_headers, fake_analysis):
    resp = client.post("/api/diagnose", json=DIAGNOSE_BODY, headers=auth_headers)
    data = resp.json()["data"]
    assert data["diagnosis"] == "Early blight"
    assert data["messages"] == []
    assert fake_analysis == [("aGVsbG8=", "Tomato", "brown rings on leaves")]

    items = client.get("/api/diagnose/history", headers=auth_headers).json()["items"]
    assert len(items) == 1
    assert items[0]["id"] == data["id"]
    assert items[0]["treatment"] == ["Spray mancozeb 2g/L"]
    assert items[0]["confidence"] == 75
    assert items[0]["imageUrl"].startswith("plant-image-")


def test_diagnose_requires_fields(client, auth_headers, fake_analysis):
    resp = client.post("/api/diagnose", json={"cropType": "Tomato"}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Missing required fields"
    assert fake_analysis == []


@pytest.mark.parametrize("error, status", [
    (NoCredentialsError(), 503),
    (RuntimeError("429 Too Many Requests"), 429),
    (RuntimeError("model not found"), 502),
])
def test_diagnose_ai_error_mapping(client, auth_headers, monkeypatch, error, status):
    def analyze(image, crop_type, symptoms):
        raise error

    monkeypatch.setattr(main, "analyze_plant_image", analyze)
    resp = client.post("/api/diagnose", json=DIAGNOSE_BODY, headers=auth_headers)
    assert resp.status_code == status
    assert resp.json()["status"] == "error"


def test_chat_sends_history_and_stores_messages(client, auth_headers, fake_analysis, monkeypatch):
    diagnosis_id = _diagnose(client, auth_headers)
    seen = []

    def chat(history, message, context=None):
        seen.append((list(history), message, context))
        return f"reply to {message}"

    monkeypatch.setattr(main, "chat_with_gemini", chat)

    first = client.post("/api/diagnose/chat", json={"diagnosisId": diagnosis_id, "message": "Is it spreading?"},
                        headers=auth_headers)
    assert first.json()["data"]["reply"] == "reply to Is it spreading?"
    client.post("/api/diagnose/chat", json={"diagnosisId": diagnosis_id, "message": "Which spray?"},
                headers=auth_headers)

    assert seen[0][0] == []
    assert "Early blight" in seen[0][2]
    assert seen[1][0] == [
        {"role": "user", "content": "Is it spreading?"},
        {"role": "assistant", "content": "reply to Is it spreading?"},
    ]

    items = client.get("/api/diagnose/history", headers=auth_headers).json()["items"]
    assert [m["role"] for m in items[0]["messages"]] == ["user", "assistant", "user", "assistant"]


def test_chat_on_someone_elses_diagnosis(client, auth_headers, fake_analysis):
    diagnosis_id = _diagnose(client, auth_headers)
    client.post("/api/auth/register", json={"email": "other@example.com", "password": "pw", "name": "Other"})
    token = client.post("/api/auth/login", json={"email": "other@example.com", "password": "pw"}).json()["data"]["token"]

    resp = client.post("/api/diagnose/chat", json={"diagnosisId": diagnosis_id, "message": "hi"},
                       headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 404


def test_autofill(client, auth_headers, monkeypatch):
    monkeypatch.setattr(main, "suggest_crop_details_from_image",
                        lambda image, language: {"cropType": "Rice", "symptoms": f"yellow leaves ({language})"})
    resp = client.post("/api/diagnose/autofill", json={"image": "aGVsbG8=", "language": "mr"}, headers=auth_headers)
    assert resp.json()["data"] == {"cropType": "Rice", "symptoms": "yellow leaves (mr)"}

    assert client.post("/api/diagnose/autofill", json={}, headers=auth_headers).status_code == 400


def test_debug_does_not_persist(client, auth_headers, fake_analysis):
    resp = client.post("/api/diagnose/debug", json={"image": "aGVsbG8="}, headers=auth_headers)
    assert resp.json()["parsed"]["diagnosis"] == "Early blight"
    assert client.get("/api/diagnose/history", headers=auth_headers).json()["items"] == []


def test_crop_guide_routes(client, auth_headers, monkeypatch):
    monkeypatch.setattr(main, "get_crop_guide", lambda db, crop: ({"cropName": crop}, "ai"))
    resp = client.get("/api/crop-guide", params={"crop": "Jowar"}, headers=auth_headers)
    assert resp.json() == {"status": "success", "data": {"cropName": "Jowar"}, "source": "ai"}

    listing = client.get("/api/crop-guide", headers=auth_headers).json()
    assert listing["source"] == "default"


def test_market_price_actions(client, auth_headers, monkeypatch):
    monkeypatch.setattr(agmarknet, "AGMARKNET_API_KEY", "")

    resp = client.get("/api/market-prices", params={"action": "list", "crop": "onion"}, headers=auth_headers)
    assert [p["cropName"] for p in resp.json()["data"]] == ["Onion"]

    resp = client.get("/api/market-prices", params={"action": "calculate", "crop": "Onion", "quantity": "10",
                                                    "cost": "7000"}, headers=auth_headers)
    assert resp.json()["data"]["profit"] == 7000.0

    resp = client.get("/api/market-prices", params={"action": "popular"}, headers=auth_headers)
    assert "Wheat" in resp.json()["data"]

    resp = client.get("/api/market-prices", params={"action": "trends", "crop": "Onion", "state": "Maharashtra"},
                      headers=auth_headers)
    assert len(resp.json()["data"]) == 30


@pytest.mark.parametrize("params, message", [
    ({"action": "bogus"}, "Invalid action parameter"),
    ({"action": "trends", "crop": "Onion"}, "Crop name and state are required for trends"),
    ({"action": "calculate", "crop": "Onion"}, "Crop name, quantity, and cost are required for calculation"),
    ({"action": "recommendations"}, "State is required for recommendations"),
])
def test_market_price_bad_requests(client, auth_headers, params, message):
    resp = client.get("/api/market-prices", params=params, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == message


def test_weather_route(client, auth_headers, monkeypatch):
    monkeypatch.setattr(main, "weather_report", lambda location, crop: {"current": {"location": location}})
    resp = client.get("/api/weather", params={"location": "Pune"}, headers=auth_headers)
    assert resp.json()["data"] == {"current": {"location": "Pune"}}

    assert client.get("/api/weather", headers=auth_headers).status_code == 400


@pytest.mark.parametrize("error, status", [
    (LocationNotFoundError("Location not found"), 404),
    (WeatherError("OpenWeather API key not configured"), 502),
])
def test_weather_errors(client, auth_headers, monkeypatch, error, status):
    def report(location, crop):
        raise error

    monkeypatch.setattr(main, "weather_report", report)
    resp = client.get("/api/weather", params={"location": "Nowhere"}, headers=auth_headers)
    assert resp.status_code == status
    assert resp.json()["message"] == str(error)


AI_ERRORS = [
    (NoCredentialsError(), 503),
    (RuntimeError("Resource exhausted: quota"), 429),
    (RuntimeError("upstream returned garbage"), 502),
    (InvalidImageError("Image is not valid base64 data"), 400),
]


def _raiser(error):
    def fail(*args, **kwargs):
        raise error
    return fail


def test_diagnose_rejects_undecodable_image(client, auth_headers):
    body = dict(DIAGNOSE_BODY, image="%%% not base64 %%%")
    resp = client.post("/api/diagnose", json=body, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json() == {"status": "error", "message": "Image is not valid base64 data"}


def test_diagnose_save_failure(client, auth_headers, fake_analysis, monkeypatch):
    monkeypatch.setattr(Session, "commit", _raiser(SQLAlchemyError("disk I/O error")))
    resp = client.post("/api/diagnose", json=DIAGNOSE_BODY, headers=auth_headers)
    assert resp.status_code == 500
    assert resp.json() == {"status": "error", "message": "Failed to save diagnosis"}


@pytest.mark.parametrize("error, status", AI_ERRORS)
def test_crop_guide_ai_error_mapping(client, auth_headers, monkeypatch, error, status):
    monkeypatch.setattr(main, "get_crop_guide", _raiser(error))
    resp = client.get("/api/crop-guide", params={"crop": "Ragi"}, headers=auth_headers)
    assert resp.status_code == status
    assert resp.json()["status"] == "error"


@pytest.mark.parametrize("error, status", AI_ERRORS)
def test_autofill_ai_error_mapping(client, auth_headers, monkeypatch, error, status):
    monkeypatch.setattr(main, "suggest_crop_details_from_image", _raiser(error))
    resp = client.post("/api/diagnose/autofill", json={"image": "aGVsbG8="}, headers=auth_headers)
    assert resp.status_code == status


@pytest.mark.parametrize("error, status", AI_ERRORS[:3])
def test_chat_ai_error_mapping_stores_nothing(client, auth_headers, fake_analysis, monkeypatch, error, status):
    diagnosis_id = _diagnose(client, auth_headers)
    monkeypatch.setattr(main, "chat_with_gemini", _raiser(error))

    resp = client.post("/api/diagnose/chat", json={"diagnosisId": diagnosis_id, "message": "Still wilting"},
                       headers=auth_headers)

    assert resp.status_code == status
    items = client.get("/api/diagnose/history", headers=auth_headers).json()["items"]
    assert items[0]["messages"] == []


def test_chat_after_failed_turn_has_no_dangling_user_message(client, auth_headers, fake_analysis, monkeypatch):
    diagnosis_id = _diagnose(client, auth_headers)
    monkeypatch.setattr(main, "chat_with_gemini", _raiser(RuntimeError("model overloaded")))
    client.post("/api/diagnose/chat", json={"diagnosisId": diagnosis_id, "message": "first"}, headers=auth_headers)

    seen = []

    def chat(history, message, context=None):
        seen.append(history)
        return "answer"

    monkeypatch.setattr(main, "chat_with_gemini", chat)
    resp = client.post("/api/diagnose/chat", json={"diagnosisId": diagnosis_id, "message": "second"},
                       headers=auth_headers)
    data = resp.json()["data"]
    assert seen == [[]]
    assert data["userMessage"]["id"] < data["assistantMessage"]["id"]


@pytest.mark.parametrize("quantity, cost", [
    ("nan", "100"),
    ("10", "inf"),
    ("-5", "100"),
    ("10", "0"),
    ("ten", "100"),
])
def test_calculate_rejects_non_positive_or_non_finite_numbers(client, auth_headers, quantity, cost):
    resp = client.get("/api/market-prices", params={"action": "calculate", "crop": "Onion", "quantity": quantity,
                                                    "cost": cost}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json() == {
        "status": "error",
        "message": "Crop name, quantity, and cost are required for calculation",
    }


def test_calculate_and_trends_include_formatted_summary(client, auth_headers, monkeypatch):
    monkeypatch.setattr(agmarknet, "AGMARKNET_API_KEY", "")

    data = client.get("/api/market-prices", params={"action": "calculate", "crop": "Onion", "quantity": "100",
                                                    "cost": "40000"}, headers=auth_headers).json()["data"]
    assert data["formattedRevenue"] == "₹1,40,000"
    assert data["formattedProfit"] == "₹1,00,000"

    body = client.get("/api/market-prices", params={"action": "trends", "crop": "Onion", "state": "Maharashtra"},
                      headers=auth_headers).json()
    assert body["change"]["direction"] in ("up", "down", "stable")
    first, last = body["data"][0]["price"], body["data"][-1]["price"]
    assert body["change"]["change"] == last - first
