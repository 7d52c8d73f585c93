from __future__ import annotations

import structlog

from worker.src.contracts.models import (
    AlertEvent,
    AlertPayload,
    AlertType,
    PriceRule,
    PriceRuleType,
    ProductSnapshot,
    RuleSet,
)

logger = structlog.get_logger(__name__)

# Mapping of short size codes to their full-length equivalents, so a watched
# "M" matches a page listing "Medium".
SIZE_ALIASES: dict[str, list[str]] = {
    "xxs": ["xx-small", "extra extra small", "double extra small"],
    "xs": ["x-small", "extra small"],
    "s": ["small"],
    "m": ["medium", "med"],
    "l": ["large"],
    "xl": ["x-large", "extra large"],
    "xxl": ["xx-large", "extra extra large", "double extra large", "2xl"],
    "3xl": ["xxx-large", "xxxl", "triple extra large"],
}


def _normalise_size(size: str) -> str:
    """Normalise a size label to its canonical short form.

    "Medium" -> "m", "Extra Large" -> "xl", "X-Small" -> "xs". Labels that
    cannot be mapped are returned lowercased with whitespace stripped.
    """
    cleaned = size.strip().lower()
    if cleaned in SIZE_ALIASES:
        return cleaned
    for short_code, aliases in SIZE_ALIASES.items():
        if cleaned in aliases:
            return short_code
    return cleaned


def _format_price(price: float) -> str:
    return f"{price:.0f}" if price == int(price) else f"{price:.2f}"


class RuleEvaluator:
    """Turn a watcher's rules plus the previous and current snapshot into alerts.

    Rules:
    - Price ``below`` / ``above``: level-triggered, fires on every check while
      the condition holds
    - Price ``change``: needs a previous price; optional minimum percentage
    - Back in stock: only on a known ``False`` -> ``True`` transition
    - Sizes: a watched size present now and not before; with no previous
      snapshot no sizes are known, so the first check can fire

    ``evaluate`` has no side effects beyond debug logging.
    """

    def evaluate(
        self,
        rules: RuleSet,
        current: ProductSnapshot,
        previous: ProductSnapshot | None,
        watcher_id: str,
        user_id: str | None = None,
    ) -> list[AlertEvent]:
        alerts: list[AlertEvent] = []
        product_name = current.title or "Unknown Product"

        def _alert(alert_type: AlertType, **payload: object) -> AlertEvent:
            return AlertEvent(
                watcher_id=watcher_id,
                type=alert_type,
                user_id=user_id,
                payload=AlertPayload(
                    product_name=product_name,
                    product_url=current.url,
                    **payload,
                ),
            )

        if rules.price is not None and current.price is not None:
            previous_price = previous.price if previous is not None else None
            message = self._check_price_rule(rules.price, current.price, previous_price)
            if message is not None:
                alerts.append(
                    _alert(
                        AlertType.PRICE_CHANGE,
                        previous_value=previous_price,
                        current_value=current.price,
                        message=message,
                    )
                )

        if (
            rules.back_in_stock
            and previous is not None
            and previous.in_stock is False
            and current.in_stock is True
        ):
            alerts.append(
                _alert(
                    AlertType.BACK_IN_STOCK,
                    previous_value=False,
                    current_value=True,
                    message="Product is back in stock!",
                )
            )

        if rules.sizes:
            previous_sizes = previous.sizes if previous is not None else []
            for size in self._newly_available_sizes(rules.sizes, current.sizes, previous_sizes):
                alerts.append(
                    _alert(
                        AlertType.SIZE_AVAILABLE,
                        current_value=size,
                        message=f"Size {size} is now available!",
                    )
                )

        if alerts:
            logger.debug(
                "rules_matched",
                watcher_id=watcher_id,
                alert_types=[alert.type.value for alert in alerts],
            )
        return alerts

    @staticmethod
    def _check_price_rule(
        rule: PriceRule, current_price: float, previous_price: float | None
    ) -> str | None:
        if rule.type == PriceRuleType.BELOW:
            if rule.value is not None and current_price < rule.value:
                return f"Price dropped below {_format_price(rule.value)}!"
            return None

        if rule.type == PriceRuleType.ABOVE:
            if rule.value is not None and current_price > rule.value:
                return f"Price is now above {_format_price(rule.value)}!"
            return None

        # PriceRuleType.CHANGE
        if previous_price is None or current_price == previous_price:
            return None

        if rule.percentage is None:
            direction = "dropped" if current_price < previous_price else "increased"
            return (
                f"Price {direction} from {_format_price(previous_price)} "
                f"to {_format_price(current_price)}"
            )

        if previous_price == 0:
            return None
        change = (current_price - previous_price) / previous_price * 100
        if abs(change) >= rule.percentage:
            direction = "dropped" if change < 0 else "increased"
            return f"Price {direction} by {abs(change):.1f}%!"
        return None

    @staticmethod
    def _newly_available_sizes(
        watched: list[str], current: list[str], previous: list[str]
    ) -> list[str]:
        """Return current size labels matching a watched size that were not listed before."""
        current_by_key: dict[str, str] = {}
        for label in current:
            current_by_key.setdefault(_normalise_size(label), label)
        previous_keys = {_normalise_size(label) for label in previous}

        newly_available: list[str] = []
        seen: set[str] = set()
        for size in watched:
            key = _normalise_size(size)
            if key in seen:
                continue
            seen.add(key)
            if key in current_by_key and key not in previous_keys:
                newly_available.append(current_by_key[key])
        return newly_available
