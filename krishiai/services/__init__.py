"""External integrations used by the KrishiAI API (Gemini, AGMARKNET, OpenWeather)."""
