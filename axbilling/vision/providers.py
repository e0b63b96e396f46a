# axbilling/vision/providers.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests
from openai import OpenAI
from pydantic import ValidationError

from ..config import settings
from ..errors import AnalysisFailed
from ..logger import get_logger
from .analysis import VEHICLE_ANALYSIS_SCHEMA, Damage, VehicleAnalysis

log = get_logger("vision.providers")

SYSTEM = """You are a vehicle inspector at a carwash.
Describe the vehicle in the image using the provided JSON schema.
Rules:
- Read the license plate exactly as written; use null if it is not clearly visible.
- Only list damage you can actually see. Never guess make or model.
- severity is one of minor, moderate, major, severe.
"""

FAL_PROMPT = (
    "Analyze this vehicle image. Describe the vehicle type (car, SUV, van, pickup, motorcycle), "
    "make and model if visible, color, the license plate number if visible (read every character), "
    "the overall condition (excellent/good/fair/poor) and any visible scratches, dents, rust or cracks."
)


@dataclass
class ProviderResult:
    provider: str
    analysis: Optional[VehicleAnalysis] = None
    error: Optional[str] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.analysis is not None


# -------------------
# Structured output (OpenRouter via the openai SDK)
# -------------------
class OpenRouterVisionProvider:
    name = "openrouter"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: int | None = None,
        client: Optional[OpenAI] = None,
    ):
        self.api_key = settings.openrouter_api_key if api_key is None else api_key
        self.model = model or settings.openrouter_model
        self.base_url = base_url or settings.openrouter_base_url
        self.timeout = timeout or settings.ai_timeout_seconds
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._client is not None or self.api_key)

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
        return self._client

    def analyze(self, image_url: str) -> VehicleAnalysis:
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Analyze this vehicle."},
                            {"type": "image_url", "image_url": {"url": image_url}},
                        ],
                    },
                ],
                # Structured Outputs: forces schema correctness
                response_format={"type": "json_schema", "json_schema": VEHICLE_ANALYSIS_SCHEMA},
            )
            content = resp.choices[0].message.content or ""
            return VehicleAnalysis.model_validate(json.loads(content))
        except (ValueError, ValidationError) as e:
            raise AnalysisFailed(f"OpenRouter returned an unusable analysis: {e}") from e
        except Exception as e:
            raise AnalysisFailed(f"OpenRouter request failed: {e}") from e


# -------------------
# Raw vision (FAL.ai), free text coerced into the same shape
# -------------------
# Malaysian style, e.g. "WXY 1234" or "B 123 C"
_PLATE = r"([A-Z]{1,3}\s?\d{1,4}(?:\s?(?-i:[A-Z]))?)\b"
_PLATE_PATTERNS = [
    re.compile(r"(?:license|number)\s+plate\s*(?:reads|is|:)?\s*[\"']?" + _PLATE, re.I),
    re.compile(r"registration\s*(?:number)?\s*(?:is|:)?\s*[\"']?" + _PLATE, re.I),
    re.compile(r"\b" + _PLATE),
]
_TYPE_WORDS = ["very heavy", "heavy bike", "motorcycle", "scooter", "bike", "pickup", "truck",
               "mpv", "van", "suv", "sedan", "hatchback", "coupe", "car"]
_MAKES = ["toyota", "honda", "nissan", "mazda", "bmw", "mercedes", "audi", "volkswagen", "ford",
          "hyundai", "kia", "lexus", "proton", "perodua", "yamaha", "kawasaki", "ducati", "harley"]
_COLORS = ["black", "white", "silver", "grey", "gray", "red", "blue", "green", "yellow", "orange",
           "brown", "gold"]
_DAMAGE_WORDS = ["scratch", "dent", "rust", "crack", "chipped", "broken", "faded"]
_JSON_RE = re.compile(r"\{[\s\S]*\}")


def _first(words: Sequence[str], text: str) -> Optional[str]:
    for w in words:
        if re.search(rf"\b{re.escape(w)}", text):
            return w
    return None


def extract_license_plate(text: str) -> Optional[str]:
    for pattern in _PLATE_PATTERNS:
        m = pattern.search(text or "")
        if m:
            plate = re.sub(r"\s+", " ", m.group(1)).strip().upper()
            if 3 <= len(plate) <= 12 and any(c.isdigit() for c in plate):
                return plate
    return None


def coerce_free_text(text: str) -> VehicleAnalysis:
    """Best-effort reading of a vision model's prose description."""
    lower = (text or "").lower()

    damages = [
        Damage(type=word, severity="minor", location="unknown", description=f"{word} mentioned in analysis")
        for word in _DAMAGE_WORDS
        if word in lower
    ]

    condition = "good"
    if "excellent" in lower:
        condition = "excellent"
    elif any(w in lower for w in ("poor", "damaged", "bad condition")):
        condition = "poor"
    elif "fair" in lower or damages:
        condition = "fair"

    make = _first(_MAKES, lower)
    year = re.search(r"\b(19|20)\d{2}\b", text or "")

    return VehicleAnalysis(
        vehicle_type=_first(_TYPE_WORDS, lower) or "other",
        make=make.title() if make else None,
        color=_first(_COLORS, lower),
        year=int(year.group(0)) if year else None,
        license_plate=extract_license_plate(text),
        damages=damages,
        overall_condition=condition,
        confidence_score=0.5,
    )


class FalVisionProvider:
    name = "fal"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: int | None = None,
        session: Optional[requests.Session] = None,
        base_url: str = "https://fal.run",
    ):
        self.api_key = settings.fal_key if api_key is None else api_key
        self.model = model or settings.fal_vision_model
        self.timeout = timeout or settings.ai_timeout_seconds
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def analyze(self, image_url: str) -> VehicleAnalysis:
        try:
            resp = self.session.post(
                f"{self.base_url}/{self.model}",
                json={"image_url": image_url, "prompt": FAL_PROMPT},
                headers={"Authorization": f"Key {self.api_key}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AnalysisFailed(f"FAL.ai request failed: {e}") from e

        if resp.status_code >= 400:
            raise AnalysisFailed(f"FAL.ai API error: {resp.status_code} {resp.text[:200]}")

        try:
            output = str(resp.json().get("output") or "")
        except ValueError as e:
            raise AnalysisFailed(f"Invalid JSON response from FAL.ai: {resp.text[:200]}") from e
        if not output.strip():
            raise AnalysisFailed("FAL.ai returned an empty analysis")

        # Some prompts make the model answer in JSON; prefer that when it parses
        m = _JSON_RE.search(output)
        if m:
            try:
                return VehicleAnalysis.model_validate(json.loads(m.group(0)))
            except (ValueError, ValidationError):
                log.info("FAL.ai output had a JSON block that did not fit, reading it as text")
        return coerce_free_text(output)


def default_providers() -> List[Any]:
    return [OpenRouterVisionProvider(), FalVisionProvider()]


def analyze_vehicle_image(image_url: str, providers: Optional[Sequence[Any]] = None) -> ProviderResult:
    """
    Try each provider once, in order, and return the first usable analysis.

    The result always names a provider: the one that answered, or the last
    one tried when every attempt failed.
    """
    chain = list(providers) if providers is not None else default_providers()
    attempts: List[Dict[str, Any]] = []
    last_name = chain[-1].name if chain else "none"

    for provider in chain:
        if not getattr(provider, "configured", True):
            attempts.append({"provider": provider.name, "ok": False, "error": "not configured"})
            continue
        try:
            analysis = provider.analyze(image_url)
        except AnalysisFailed as e:
            log.warning(f"Vision provider {provider.name} failed, trying next: {e.message}")
            attempts.append({"provider": provider.name, "ok": False, "error": e.message})
            continue

        attempts.append({"provider": provider.name, "ok": True})
        log.info(f"Vehicle analysed by {provider.name}")
        return ProviderResult(provider=provider.name, analysis=analysis, attempts=attempts)

    error = "; ".join(f"{a['provider']}: {a['error']}" for a in attempts) or "No vision providers configured"
    log.error(f"Vehicle analysis failed: {error}")
    return ProviderResult(provider=last_name, error=error, attempts=attempts)
