from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
import math
import re

from relayrag.services.costs.pricing import rate_for_model


# CJK punctuation, hiragana, katakana and unified ideographs.
_CJK_PATTERN = re.compile(r"[\u3000-\u303f\u3040-\u309f\u30a0-\u30ff\u4e00-\u9faf]")
_MILLION = Decimal("1000000")
_COST_QUANT = Decimal("0.000001")


def estimate_tokens(text: str) -> int:
    """Heuristic token count used only when a vendor reports no usage.

    CJK characters are charged at 1 token per 1.5 characters and everything
    else at 1 token per 4 characters; the sum is rounded up.
    """
    if not text:
        return 0
    cjk = len(_CJK_PATTERN.findall(text))
    other = len(text) - cjk
    # Integer arithmetic avoids float drift: cjk/1.5 + other/4 == (8*cjk + 3*other) / 12.
    return math.ceil((8 * cjk + 3 * other) / 12)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> Decimal:
    # Ledger cost in USD, rounded to micro-dollars for stable storage.
    rate = rate_for_model(model)
    cost = (
        Decimal(max(input_tokens, 0)) * rate.input_per_million
        + Decimal(max(output_tokens, 0)) * rate.output_per_million
    ) / _MILLION
    return cost.quantize(_COST_QUANT, rounding=ROUND_HALF_UP)
