"""Prompt assembly: reconciled facts and session state as model context."""

from typing import Optional

from portfolio.models import PORTFOLIO_SUBJECT, FactKind, ReconciliationResult

SYSTEM_PROMPT = """You are a portfolio analysis assistant.

Rules:
- Figures under "Known Data" were already stated in this conversation or fetched this turn. Use them as given.
- Never restate a holding with a different share count than the one listed.
- When a price changed since it was last mentioned, say so and give the change.
- If data is marked STALE, mention that it may be out of date.
"""


def _money(value: float) -> str:
    return f"${value:,.2f}"


def format_facts_for_prompt(
    result: ReconciliationResult, holdings: Optional[dict[str, float]] = None
) -> str:
    """Price updates with signed deltas, then current prices with position values."""
    holdings = holdings or {}
    lines: list[str] = []

    changed = sorted(result.subject_keys("changed", FactKind.PRICE))
    if changed:
        lines.append("PRICE UPDATES (since last mentioned):")
        for ticker in changed:
            rf = result.get(ticker)
            pct = f" ({rf.change_percent:+.2f}%)" if rf.change_percent is not None else ""
            lines.append(f"  {ticker}: {_money(rf.previous_value)} -> {_money(rf.value)}{pct}")
        lines.append("")

    preserved = sorted(result.subject_keys("preserved", FactKind.PRICE))
    fresh = sorted(result.subject_keys("fresh", FactKind.PRICE))
    if preserved or fresh or changed:
        lines.append("CURRENT PRICES:")
        for ticker in sorted({*preserved, *changed}):
            rf = result.get(ticker)
            text = f"  {ticker}: {_money(rf.value)}"
            shares = holdings.get(ticker)
            if shares:
                text += f" x {shares:g} shares = {_money(rf.value * shares)}"
            if rf.stale:
                text += " (STALE)"
            lines.append(text)
        for ticker in fresh:
            lines.append(f"  {ticker}: {_money(result.get(ticker).value)} (new)")
        lines.append("")

    metrics = result.of_kind(FactKind.METRIC)
    if metrics:
        lines.append("FUNDAMENTALS:")
        for subject, rf in sorted(metrics.items()):
            lines.append(f"  {subject}: {rf.value:g}")
        lines.append("")

    total = result.get(PORTFOLIO_SUBJECT, FactKind.TOTAL_VALUE)
    if total is not None:
        text = f"PORTFOLIO TOTAL: {_money(total.value)}"
        if total.previous_value is not None:
            text += f" (previously {_money(total.previous_value)})"
        lines.append(text)

    return "\n".join(lines).rstrip()


def build_messages(
    message: str,
    history: list[dict],
    known_data: str = "",
    facts_text: str = "",
    clarification: str = "",
    system_prompt: str = SYSTEM_PROMPT,
) -> list[dict]:
    """System prompt with context sections, prior turns, then the new user message."""
    system = system_prompt
    if known_data:
        system += "\n" + known_data
    if facts_text:
        system += "\n## Reconciled Data (this turn)\n" + facts_text + "\n"
    if clarification:
        system += "\n## Portfolio\n" + clarification + "\nAsk the user which portfolio they mean.\n"

    messages = [{"role": "system", "content": system}]
    for turn in history or []:
        if turn.get("role") in ("user", "assistant") and turn.get("content"):
            messages.append({"role": turn["role"], "content": turn["content"]})
    messages.append({"role": "user", "content": message})
    return messages
