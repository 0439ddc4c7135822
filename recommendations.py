"""
AI product recommendations.

The customer's recently viewed product names are sent to a chat model, which answers with a
comma-separated list of product names. Those names are matched back to catalog entries by exact
(case-insensitive) name.
"""
import logging
import os
from typing import Any, Dict, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

logger = logging.getLogger("atozdpolify")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
RECOMMENDATION_MODEL = os.getenv("RECOMMENDATION_MODEL", "gpt-4o-mini")
MAX_RECOMMENDATIONS = 4

RECOMMENDATION_PROMPT = """\
You are an intelligent shopping assistant. Your goal is to help users discover products they'll love.
Based on the following list of recently viewed product names, please recommend up to 4 other distinct product names from a typical e-commerce catalog that this user might be interested in.
Prioritize products that are related to or complement the items in the browsing history, but also aim to introduce some relevant variety.
Do not suggest products that are already present in the browsing history.

Browsing History (comma-separated list of product names):
{browsing_history}

Provide your recommendations as a list of product names.
Format: Only the product names, separated by commas. For example: "Cool Gadget, Stylish Mug, Useful Book"
Recommended Products:"""


def build_model() -> Optional[BaseChatModel]:
    if not OPENAI_API_KEY:
        return None
    return ChatOpenAI(model=RECOMMENDATION_MODEL, api_key=OPENAI_API_KEY, temperature=0.7)


def parse_recommendations(text: str) -> List[str]:
    text = text.strip().strip('"')
    return [name.strip().strip('"') for name in text.split(",") if name.strip().strip('"')]


def ask_model(model: BaseChatModel, history_names: List[str]) -> List[str]:
    prompt = RECOMMENDATION_PROMPT.format(browsing_history=", ".join(history_names))
    response = model.invoke(prompt)
    content = response.content if hasattr(response, "content") else str(response)
    if isinstance(content, list):
        content = "".join(part if isinstance(part, str) else part.get("text", "") for part in content)
    return parse_recommendations(content)


def match_products(names: List[str], catalog: List[Dict[str, Any]], history_names: List[str]) -> List[Dict[str, Any]]:
    by_name = {p["name"].lower(): p for p in catalog}
    seen = set(history_names)
    matched: List[Dict[str, Any]] = []
    for name in names[:MAX_RECOMMENDATIONS]:
        product = by_name.get(name.lower())
        if product and product["name"] not in seen and product not in matched:
            matched.append(product)
    return matched[:MAX_RECOMMENDATIONS]


def recommend(model: Optional[BaseChatModel], history_names: List[str], catalog: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Recommend catalog products for a browsing history; failures yield no recommendations."""
    if model is None or not history_names:
        return []
    try:
        names = ask_model(model, history_names)
    except Exception as exc:
        logger.error("Recommendation request failed: %s", exc)
        return []
    return match_products(names, catalog, history_names)
