# axbilling/vision/analysis.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..config import settings

VEHICLE_TYPES = ("sedan", "mpv_van", "large_pickup", "regular_bike", "heavy_bike", "very_heavy_bike")


class Damage(BaseModel):
    type: str = "other"
    severity: str = "minor"
    location: str = "unknown"
    description: str = ""
    estimated_cost_range: Optional[str] = None


class VehicleAnalysis(BaseModel):
    vehicle_type: str = "other"
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    color: Optional[str] = None
    license_plate: Optional[str] = None
    damages: List[Damage] = Field(default_factory=list)
    overall_condition: str = "good"
    estimated_total_cost: Optional[str] = None
    recommendations: List[str] = Field(default_factory=list)
    confidence_score: Optional[float] = None


# JSON Schema for Structured Outputs
VEHICLE_ANALYSIS_SCHEMA: Dict[str, Any] = {
    "name": "vehicle_analysis",
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "vehicle_type": {"type": "string"},
            "make": {"type": ["string", "null"]},
            "model": {"type": ["string", "null"]},
            "year": {"type": ["integer", "null"]},
            "color": {"type": ["string", "null"]},
            "license_plate": {"type": ["string", "null"]},
            "damages": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "type": {"type": "string"},
                        "severity": {"type": "string", "enum": ["minor", "moderate", "major", "severe"]},
                        "location": {"type": "string"},
                        "description": {"type": "string"},
                        "estimated_cost_range": {"type": ["string", "null"]},
                    },
                    "required": ["type", "severity", "location", "description", "estimated_cost_range"],
                },
            },
            "overall_condition": {"type": "string"},
            "estimated_total_cost": {"type": ["string", "null"]},
            "recommendations": {"type": "array", "items": {"type": "string"}},
            "confidence_score": {"type": ["number", "null"]},
        },
        "required": [
            "vehicle_type", "make", "model", "year", "color", "license_plate", "damages",
            "overall_condition", "estimated_total_cost", "recommendations", "confidence_score",
        ],
    },
    "strict": True,
}


def map_vehicle_type(raw: str | None) -> str:
    """Fold a free-form vehicle description onto one of the six wash classes."""
    t = (raw or "").lower().replace("_", " ")
    if t.replace(" ", "_") in VEHICLE_TYPES:
        return t.replace(" ", "_")

    # "very heavy" must be checked before "heavy bike"
    if "very heavy" in t or "super heavy" in t:
        return "very_heavy_bike"
    if "heavy bike" in t or "heavy motorcycle" in t:
        return "heavy_bike"
    if "bike" in t or "motorcycle" in t or "scooter" in t:
        return "regular_bike"
    if "pickup" in t or "truck" in t:
        return "large_pickup"
    if "mpv" in t or "van" in t or "suv" in t:
        return "mpv_van"
    return "sedan"


def generate_service_recommendations(analysis: VehicleAnalysis, customer_tier: str = "standard") -> List[str]:
    recs: List[str] = ["Basic wash and inspection"]
    kinds = {d.type.lower() for d in analysis.damages}
    condition = (analysis.overall_condition or "").lower()

    if kinds & {"scratch", "chipped", "faded"}:
        recs.append("Paint correction and polish")
    if "dent" in kinds:
        recs.append("Paintless dent repair referral")
    if "rust" in kinds:
        recs.append("Rust treatment")
    if condition in {"fair", "poor", "damaged"}:
        recs.append("Interior and exterior detailing")
    if map_vehicle_type(analysis.vehicle_type).endswith("bike"):
        recs.append("Chain and engine bay degrease")
    if customer_tier in {"premium", "vip"}:
        recs.append("Ceramic wax protection")

    # keep order, drop duplicates from the model's own suggestions
    for r in analysis.recommendations:
        if r not in recs:
            recs.append(r)
    return recs


# Rough price per recommendation, keyed by a word it contains
_COST_TABLE = {
    "basic wash": (15, 30),
    "polish": (80, 150),
    "dent": (100, 300),
    "rust": (60, 120),
    "detailing": (120, 250),
    "degrease": (20, 40),
    "ceramic": (200, 400),
}
_SEVERITY_COST = {"minor": (20, 50), "moderate": (50, 150), "major": (150, 400), "severe": (400, 1000)}


def estimate_service_costs(damages: List[Damage], services: List[str]) -> str:
    low = high = 0
    for s in services:
        for key, (lo, hi) in _COST_TABLE.items():
            if key in s.lower():
                low += lo
                high += hi
                break
    for d in damages:
        lo, hi = _SEVERITY_COST.get(d.severity.lower(), _SEVERITY_COST["minor"])
        low += lo
        high += hi

    if not low and not high:
        low, high = 50, 100
    return f"{settings.currency} {low}-{high} estimated cost"
