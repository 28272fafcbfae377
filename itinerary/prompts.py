"""Prompt profiles for the research and curation stages."""

import json
from datetime import date, datetime
from typing import Any, Dict, List, Optional

RESEARCH_SYSTEM = """
You are a travel research expert specializing in destination analysis.
Provide comprehensive, accurate travel information in JSON format.
Focus on practical details that would help create a detailed itinerary.
"""

CURATION_SYSTEM = """
You are an expert travel itinerary curator specializing in US/Canada long weekend getaways.
Create detailed, practical, interest-based itineraries in JSON format for 3-4 day trips.
Focus on maximizing interests, family-friendliness when needed, and authentic local experiences.
"""

RESEARCH_SHAPE = """
{
  "destination": {
    "name": "Specific destination name",
    "city": "Primary city",
    "region": "State/province/region",
    "country": "Country name",
    "timeZone": "IANA timezone",
    "coordinates": {"lat": 0.0, "lng": 0.0}
  },
  "contextData": {
    "culture": ["cultural highlights", "customs", "etiquette tips"],
    "cuisine": ["local specialties", "dining customs", "dietary considerations"],
    "attractions": ["must-see places", "hidden gems", "seasonal attractions"],
    "neighborhoods": ["recommended areas", "characteristics", "what each offers"],
    "transportation": ["getting around", "local transport", "tips"],
    "seasonalConsiderations": ["weather during travel dates", "seasonal events"],
    "budgetInsights": {
      "budget": "Budget-friendly insights",
      "mid-range": "Mid-range spending insights",
      "luxury": "Luxury experience insights",
      "no-limit": "Premium/exclusive experience insights"
    }
  },
  "personaRecommendations": {
    "photography": {"focus": [], "recommendations": [], "warnings": []},
    "food-forward": {"focus": [], "recommendations": [], "warnings": []},
    "architecture": {"focus": [], "recommendations": [], "warnings": []},
    "family": {"focus": [], "recommendations": [], "warnings": []}
  },
  "researchSources": ["source1", "source2"],
  "confidence": 0.95
}
"""

CURATION_SHAPE = """
{
  "activities": [
    {
      "name": "Activity name",
      "description": "Detailed description with context",
      "category": "dining|sightseeing|culture|nature|shopping|nightlife|transport",
      "timing": {"dayNumber": 1, "startTime": "09:00", "duration": 120,
                 "flexibility": "fixed|flexible|weather-dependent", "bufferTime": 30},
      "location": {
        "name": "Venue name",
        "address": "Full address",
        "coordinates": {"lat": 0.0, "lng": 0.0},
        "neighborhood": "Area name",
        "accessibility": {"wheelchairAccessible": true, "hearingAssistance": false,
                          "visualAssistance": false, "notes": []}
      },
      "personaContext": {"reasoning": "", "highlights": [], "tips": []}
    }
  ],
  "itineraryOverview": {
    "estimatedCost": {"min": 0, "max": 0, "currency": "USD"},
    "themes": ["main themes of the itinerary"],
    "highlights": ["top experiences"]
  },
  "curationMetadata": {
    "interestAlignment": 0.95,
    "childFriendliness": 0.9,
    "logisticalScore": 0.85,
    "diversityScore": 0.8
  }
}
"""


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item not in (None, "")]
    return [str(value)]


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def trip_window(requirements: Dict[str, Any]) -> Dict[str, Any]:
    """Start/end dates as ISO strings plus the trip length in days, when known."""
    dates = requirements.get("dates") or {}
    start = _parse_date(dates.get("startDate"))
    end = _parse_date(dates.get("endDate"))
    days = None
    if start and end:
        days = max((end - start).days, 1)
    return {
        "start": start.isoformat() if start else "unspecified",
        "end": end.isoformat() if end else "unspecified",
        "days": days,
    }


def build_research_prompt(requirements: Dict[str, Any]) -> str:
    window = trip_window(requirements)
    persona = requirements.get("persona") or "general"
    budget = requirements.get("budgetRange") or "mid-range"
    days = f"{window['days']} days" if window["days"] else "duration unspecified"
    special = ", ".join(_as_list(requirements.get("specialRequests"))) or "None"
    accessibility = ", ".join(_as_list(requirements.get("accessibilityNeeds"))) or "None"
    return (
        f"Research destination: {requirements.get('destination') or 'unspecified'}\n"
        f"Travel dates: {window['start']} to {window['end']} ({days})\n"
        f"Persona focus: {persona}\n"
        f"Budget range: {budget}\n"
        f"Group size: {requirements.get('groupSize') or 1}\n"
        f"Special requests: {special}\n"
        f"Accessibility needs: {accessibility}\n\n"
        "Provide comprehensive destination research in the following JSON structure:\n"
        f"{RESEARCH_SHAPE}\n"
        f"Focus especially on the {persona} persona and {budget} budget considerations. "
        "Consider the trip duration and travel dates for seasonal recommendations."
    )


def build_curation_prompt(requirements: Dict[str, Any], research: Dict[str, Any]) -> str:
    interests = _as_list(requirements.get("interests"))
    composition = requirements.get("travelerComposition") or {}
    adults = composition.get("adults") or requirements.get("groupSize") or 1
    children = composition.get("children") or 0
    ages = [int(age) for age in composition.get("childrenAges") or [] if str(age).isdigit()]
    children_guidance = ""
    if children and ages:
        children_guidance = (
            f"\n- Children ages: {', '.join(str(age) for age in ages)}"
            f"\n- CRITICAL: All activities must be appropriate for children aged {min(ages)}-{max(ages)}"
            "\n- Include family-friendly dining options"
            "\n- Consider nap times and shorter attention spans"
        )
    interest_text = ", ".join(interests) or "General sightseeing"
    accessibility = ", ".join(_as_list(requirements.get("accessibilityNeeds"))) or "None"
    special = ", ".join(_as_list(requirements.get("specialRequests"))) or "None"
    return (
        "Based on this research context, create a detailed 3-4 day long weekend itinerary.\n\n"
        "REQUIREMENTS:\n"
        f"- Destination: {requirements.get('destination') or 'unspecified'}\n"
        f"- Duration: {requirements.get('duration') or trip_window(requirements)['days'] or '3-4 days'}\n"
        f"- Traveler interests: {interest_text}\n"
        f"- Group composition: {adults} adults, {children} children{children_guidance}\n"
        f"- Special requests: {special}\n"
        f"- Accessibility needs: {accessibility}\n\n"
        "RESEARCH CONTEXT:\n"
        f"{json.dumps(research, indent=2)}\n\n"
        "Create a JSON response with this structure:\n"
        f"{CURATION_SHAPE}\n"
        "GUIDELINES:\n"
        f"1. Prioritize activities matching interests: {interest_text}\n"
        f"2. {'Ensure all activities are appropriate for children' if children else 'Focus on adult experiences'}\n"
        "3. Plan 3-5 activities per day for optimal pacing\n"
        "4. Use realistic coordinates and addresses\n"
        "5. Provide practical timing with buffer time (startTime as HH:MM)\n"
        "6. Ensure activities flow logistically by proximity\n"
    )
