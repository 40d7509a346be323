"""
Narrative generator: a short, friendly Markdown guide to the destination.

Sends a templated prompt to the OpenAI chat completions endpoint. This is
best-effort enrichment: any failure surfaces as NarrativeError and the
plan builder substitutes FALLBACK_NARRATIVE.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from geo_features import GeoFeature
from http_client import ServiceError, ServiceHTTPClient
from recommendation import CATEGORY_PARK

logger = logging.getLogger(__name__)

FALLBACK_NARRATIVE = "Sorry, we couldn't generate a guide for this park at the moment."

# Park attributes worth mentioning when truthy (SANDAG Parks_SD field names)
FACILITY_KEYS = [
    "tennis", "basketball", "playground", "baseball_90", "baseball_50_6",
    "softball", "sand_vball", "multi_purpose", "concession_stand",
    "comfort_station", "field_lighting", "recycled_water",
]

DEFAULT_MAX_TOKENS = 200
_REQUEST_TIMEOUT = 15


class NarrativeError(Exception):
    """The language model could not produce a guide."""

    pass


def park_facilities(props: Mapping[str, Any]) -> List[str]:
    """'tennis: Yes'-style fragments for every truthy facility flag, in FACILITY_KEYS order."""
    return [
        f"{key.replace('_', ' ')}: {props[key]}"
        for key in FACILITY_KEYS
        if props.get(key)
    ]


def _park_prompt(feature: GeoFeature) -> str:
    props = feature.properties
    name = props.get("full_name") or props.get("common_name") or "This park"
    acres = feature.get_number("acres")
    size = f"{acres:.2f}-acre " if acres is not None else ""
    use = props.get("desig_use") or "park"
    community = props.get("community") or "San Diego"
    facilities = ", ".join(park_facilities(props)) or "none listed"
    return (
        "Create a fun, user-readable guide about the following park (2-3 sentences):\n"
        f"{name} is a {size}{use} located in {community}.\n"
        f"Facilities: {facilities}\n"
        "Highlight its main features and why someone might want to visit.\n"
        "This guide is being used to give users an easy, healthy outside plan.\n"
        "Give suggestions about what they can do in the form of a short list, 3-4 bullet points.\n"
        "Format the response using Markdown, including bold text for emphasis and "
        "bullet points for listing features. The title should be H3\n"
    )


def _trail_prompt(feature: GeoFeature) -> str:
    props = feature.properties
    name = props.get("name") or "An unnamed bike path"
    kind = props.get("class") or props.get("type") or "bike route"
    return (
        "Create a fun, user-readable guide about the following trail (2-3 sentences):\n"
        f"{name} is a {kind} in San Diego.\n"
        "Suggest how someone could enjoy it on foot or by bike for an easy, healthy outing.\n"
        "Give suggestions in the form of a short list, 3-4 bullet points.\n"
        "Format the response using Markdown, including bold text for emphasis and "
        "bullet points. The title should be H3\n"
    )


def build_prompt(feature: GeoFeature, category: str) -> str:
    if category == CATEGORY_PARK:
        return _park_prompt(feature)
    return _trail_prompt(feature)


class NarrativeGenerator:
    """Thin client for the chat completions API."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        url: str = "https://api.openai.com/v1/chat/completions",
        client: Optional[ServiceHTTPClient] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.max_tokens = max_tokens
        self._client = client or ServiceHTTPClient(max_retries=1)

    def generate(self, feature: GeoFeature, category: str) -> str:
        """Return Markdown text for *feature*. Raises NarrativeError on any failure."""
        if not self.api_key:
            raise NarrativeError("OPENAI_API_KEY is not configured")

        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": build_prompt(feature, category)}],
            "max_tokens": self.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            data = self._client.post_json(
                self.url, "openai", "chat_completion",
                json_body=body, headers=headers, timeout=_REQUEST_TIMEOUT,
            )
        except ServiceError as e:
            raise NarrativeError(str(e)) from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise NarrativeError("chat completion response had no message content") from e
        if not isinstance(content, str) or not content.strip():
            raise NarrativeError("chat completion returned empty content")
        return content.strip()
