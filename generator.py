"""AI generation capability: HTTP adapter, prompt builders and response parsers.

The engine only depends on GenerationCapability.generate(prompt, context).
MessagesClient is the default implementation over an HTTP messages endpoint;
tests and offline runs substitute any object with the same method.
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol

import requests

import config
from errors import GenerationError, GenerationErrorKind, InvalidInput
from models import (
    AIRecommendation,
    Budget,
    BuyWindow,
    InventoryItem,
    PricePoint,
    Product,
    RecommendationType,
)

logger = logging.getLogger(__name__)


class GenerationCapability(Protocol):
    def generate(self, prompt: str, context: dict) -> str:
        """Return generated text, or raise GenerationError."""
        ...


class MessagesClient:
    """Sends one user message per prompt and returns the concatenated text."""

    def __init__(self, api_url: str = config.AI_API_URL, api_key: str = config.AI_API_KEY,
                 model: str = config.AI_MODEL, max_tokens: int = 1024,
                 timeout: float = 60.0, session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.session = session or requests.Session()

    def generate(self, prompt: str, context: Optional[dict] = None) -> str:
        if not self.api_key:
            raise GenerationError(GenerationErrorKind.NETWORK, "AI API key is not configured")

        context = context or {}
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if context.get("system"):
            body["system"] = context["system"]
        headers = {
            "content-type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": "2023-06-01",
        }

        try:
            resp = self.session.post(self.api_url, json=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise GenerationError(GenerationErrorKind.NETWORK, str(e)) from e

        if resp.status_code == 429:
            raise GenerationError(GenerationErrorKind.RATE_LIMITED, "rate limited by AI provider")
        if not 200 <= resp.status_code < 300:
            raise GenerationError(GenerationErrorKind.INVALID_RESPONSE, f"HTTP {resp.status_code}")

        try:
            data = resp.json()
            text = "".join(
                block["text"] for block in data["content"]
                if block.get("type", "text") == "text"
            )
        except (ValueError, KeyError, TypeError) as e:
            raise GenerationError(GenerationErrorKind.INVALID_RESPONSE, f"undecodable body: {e}") from e

        logger.debug(f"Generated {len(text)} chars for {context.get('key', 'prompt')}")
        return text


# ── Prompts ────────────────────────────────────────────────────

SYSTEM_PROMPT = (
    "You are a shopping assistant that analyses prices, budgets and household "
    "inventory. Answer with a single JSON object and no other text."
)


def price_prediction_prompt(product: Product, history: Iterable[PricePoint]) -> str:
    lines = [
        f"- {p.retailer.name}: ${p.total_price:.2f} on {p.timestamp.date().isoformat()}"
        + ("" if p.in_stock else " (out of stock)")
        for p in history
    ]
    return (
        f"Analyze the price history for {product.name} and predict the best time to buy.\n\n"
        f"Price History:\n{chr(10).join(lines) or '- no observations yet'}\n\n"
        f"Product Category: {product.category.value}\n\n"
        "Provide:\n"
        "1. Price trend (rising, falling or stable)\n"
        "2. The best window to buy within the next 30 days\n"
        "3. Expected price range\n"
        "4. Confidence score (0-1)\n\n"
        "Format the response as JSON with keys: trend, reason, buy_window_start, "
        "buy_window_end (ISO dates), expected_price_range ({min, max}), confidence"
    )


def budget_prompt(budget: Budget) -> str:
    categories = ", ".join(
        f"{c.value}: ${budget.category_spending.get(c, 0.0):.2f} of ${limit:.2f}"
        for c, limit in budget.category_limits.items()
    )
    return (
        "Optimize this monthly shopping budget.\n\n"
        "Current Budget:\n"
        f"- Monthly Limit: ${budget.monthly_limit:.2f}\n"
        f"- Spent This Month: ${budget.current_month_spending:.2f}\n"
        f"- Categories: {categories or 'none'}\n\n"
        "Format the response as JSON with key recommendations: a list of objects "
        "with keys reason, potential_savings, confidence (0-1)"
    )


def restock_prompt(items: Iterable[InventoryItem], product_name: Callable[[str], str]) -> str:
    lines = [
        f"- {product_name(i.product_id)} (id {i.product_id}): {i.current_quantity} of "
        f"{i.preferred_quantity} units, reorder at {i.reorder_threshold}"
        + (f", lasts ~{i.average_consumption_days} days" if i.average_consumption_days else "")
        for i in items
    ]
    return (
        "Plan restocking for this household inventory.\n\n"
        f"Current Inventory:\n{chr(10).join(lines) or '- empty'}\n\n"
        "Identify items to restock soon and bulk purchase opportunities.\n"
        "Format the response as JSON with key recommendations: a list of objects "
        "with keys product_id, reason, potential_savings, confidence (0-1)"
    )


# ── Parsers ────────────────────────────────────────────────────

def _invalid(message: str) -> GenerationError:
    return GenerationError(GenerationErrorKind.INVALID_RESPONSE, message)


def extract_json(text: str) -> dict:
    """Decode a JSON object from model output, tolerating markdown fences."""
    content = (text or "").strip()
    if content.startswith("```"):
        content = "\n".join(l for l in content.split("\n") if not l.strip().startswith("```"))
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse generated JSON: {content[:200]}")
        raise _invalid(f"malformed JSON: {e}") from e
    if not isinstance(data, dict):
        raise _invalid("expected a JSON object")
    return data


def _confidence(value: Any) -> float:
    try:
        return min(max(float(value), 0.0), 1.0)
    except (TypeError, ValueError):
        raise _invalid(f"confidence is not a number: {value!r}") from None


def _amount(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        raise _invalid(f"not an amount: {value!r}") from None


def _when(value: Any, now: datetime) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        raise _invalid(f"not an ISO date: {value!r}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed


def parse_price_prediction(text: str, product_id: str, latest: Optional[PricePoint],
                           now: datetime) -> list[AIRecommendation]:
    data = extract_json(text)
    if "confidence" not in data:
        raise _invalid("missing confidence")

    window = None
    if data.get("buy_window_start") and data.get("buy_window_end"):
        start = _when(data["buy_window_start"], now)
        end = _when(data["buy_window_end"], now)
        if end < start:
            raise _invalid("buy window ends before it starts")
        window = BuyWindow(start, end)

    savings = None
    price_range = data.get("expected_price_range") or {}
    if latest is not None and isinstance(price_range, dict) and price_range.get("min") is not None:
        expected_min = _amount(price_range["min"])
        if expected_min < latest.total_price:
            savings = round(latest.total_price - expected_min, 2)

    trend = str(data.get("trend", "")).lower()
    rec_type = RecommendationType.PRICE_DROP if trend == "falling" else RecommendationType.TIMING
    reason = data.get("reason") or f"Price trend is {trend or 'unknown'}"
    return [AIRecommendation(
        product_id=product_id,
        reason=str(reason),
        confidence=_confidence(data["confidence"]),
        type=rec_type,
        created_at=now,
        potential_savings=savings,
        buy_window=window,
    )]


def parse_recommendation_list(text: str, rec_type: RecommendationType,
                              now: datetime) -> list[AIRecommendation]:
    data = extract_json(text)
    items = data.get("recommendations")
    if not isinstance(items, list):
        raise _invalid("recommendations must be a list")

    recs = []
    for item in items:
        if not isinstance(item, dict) or not item.get("reason"):
            raise _invalid(f"recommendation without a reason: {item!r}")
        try:
            recs.append(AIRecommendation(
                product_id=item.get("product_id"),
                reason=str(item["reason"]),
                confidence=_confidence(item.get("confidence", 0.0)),
                type=rec_type,
                created_at=now,
                potential_savings=_amount(item.get("potential_savings")),
            ))
        except InvalidInput as e:
            raise _invalid(str(e)) from e
    return recs


# ── Cache generators ───────────────────────────────────────────
# Each factory captures a snapshot of its inputs and returns a zero-argument
# callable producing a JSON-serializable payload for the cache.

def product_generator(capability: GenerationCapability, product: Product,
                      history: tuple, now: Callable[[], datetime]) -> Callable[[], list]:
    def generate() -> list:
        text = capability.generate(
            price_prediction_prompt(product, history),
            {"key": f"product:{product.product_id}", "system": SYSTEM_PROMPT},
        )
        latest = history[-1] if history else None
        return [r.to_dict() for r in parse_price_prediction(text, product.product_id, latest, now())]
    return generate


def budget_generator(capability: GenerationCapability, budget: Budget,
                     now: Callable[[], datetime]) -> Callable[[], list]:
    def generate() -> list:
        text = capability.generate(budget_prompt(budget), {"key": "batch:budget", "system": SYSTEM_PROMPT})
        return [r.to_dict() for r in
                parse_recommendation_list(text, RecommendationType.BUDGET_OPTIMIZATION, now())]
    return generate


def restock_generator(capability: GenerationCapability, items: list[InventoryItem],
                      product_name: Callable[[str], str],
                      now: Callable[[], datetime]) -> Callable[[], list]:
    def generate() -> list:
        text = capability.generate(
            restock_prompt(items, product_name),
            {"key": "batch:restock", "system": SYSTEM_PROMPT},
        )
        return [r.to_dict() for r in parse_recommendation_list(text, RecommendationType.STOCK_UP, now())]
    return generate
