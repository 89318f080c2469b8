"""
Signal filtering logic for Signal Trader.

Decides whether an incoming channel message is a buy signal and extracts the
ticker and header line from it.
"""

import re
import unicodedata
from dataclasses import dataclass

import structlog

from shared.models import BuySignal

logger = structlog.get_logger(__name__)

_URL_RE = re.compile(r"https?://\S+")
_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")
_SPACES_RE = re.compile("[\u00a0\u202f\u2009]")
_NEW_TRENDING_RE = re.compile(r"new\s+trending", re.IGNORECASE)
_DEV_LINE_RE = re.compile(r"(^|[\s\W])dev\s*[:\uff1a]", re.IGNORECASE)
_DEV_TICKER_RE = re.compile(r"\$[A-Z][A-Z0-9]{1,11}\b")
_TICKER_RE = re.compile(r"\$[A-Z0-9]{2,12}\b")
_TME_RE = re.compile(r"^https?://t\.me/\+?[A-Za-z0-9_/-]+$", re.IGNORECASE)
_INVITE_RE = re.compile(r"^(?:\+|joinchat/)([A-Za-z0-9_-]+)$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{5,}$")


def sanitize(text: str | None) -> str:
    """Strip URLs and zero-width characters, normalise spaces, apply NFKC."""
    text = _URL_RE.sub("", text or "")
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _SPACES_RE.sub(" ", text)
    return unicodedata.normalize("NFKC", text)


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def get_header_line(text: str) -> str:
    """First non-empty line."""
    lines = _lines(text)
    return lines[0] if lines else ""


def has_new_trending(text: str) -> bool:
    """Check the first two non-empty lines for "new trending"."""
    lines = _lines(text)
    head = " | ".join((lines + ["", ""])[:2])
    return bool(_NEW_TRENDING_RE.search(head))


def extract_ticker_from_dev(text: str) -> str | None:
    """Ticker on the ``dev:`` line, if there is one."""
    dev_line = next((line for line in text.split("\n") if _DEV_LINE_RE.search(line)), None)
    if dev_line is None:
        return None
    match = _DEV_TICKER_RE.search(dev_line)
    return match.group(0) if match else None


def extract_ticker(text: str) -> str | None:
    """First ``$TICKER`` anywhere in the text."""
    match = _TICKER_RE.search(text)
    return match.group(0) if match else None


@dataclass
class JoinTarget:
    """A chat to join: a public username or a private invite hash."""

    type: str
    value: str


def parse_tme_link(raw: str | None) -> JoinTarget | None:
    """
    Parse ``@name``, ``name``, ``t.me/name``, ``t.me/+hash`` or ``t.me/joinchat/hash``.

    Returns:
        JoinTarget, or None if the value is not recognised
    """
    s = (raw or "").strip()
    if not s:
        return None
    if s.startswith("@"):
        return JoinTarget("username", s[1:])
    if _TME_RE.match(s):
        tail = re.sub(r"^https?://t\.me/", "", s, flags=re.IGNORECASE)
        invite = _INVITE_RE.match(tail)
        if invite:
            return JoinTarget("invite", invite.group(1))
        return JoinTarget("username", tail.split("/")[0])
    if _USERNAME_RE.match(s):
        return JoinTarget("username", s)
    return None


@dataclass
class FilterResult:
    """Result of filtering a message."""

    passed: bool
    signal: BuySignal | None = None
    reason: str | None = None

    def __str__(self) -> str:
        if self.passed and self.signal:
            return f"PASS: {self.signal.ticker}"
        return f"FAIL: {self.reason}"


class SignalFilter:
    """
    Filters channel messages down to buy signals.

    A message qualifies when it comes from a group or channel, mentions
    "new trending" in its first two lines and contains a ticker. The ticker
    on a ``dev:`` line wins over the first ticker in the text.
    """

    def parse(
        self,
        text: str | None,
        is_group: bool = True,
        chat_id: int | None = None,
        message_id: int | None = None,
    ) -> FilterResult:
        """
        Apply all checks to a message.

        Args:
            text: Raw message text
            is_group: Whether the message came from a group or channel
            chat_id: Source chat id
            message_id: Source message id

        Returns:
            FilterResult with the extracted BuySignal when it passes
        """
        if not is_group:
            return FilterResult(passed=False, reason="not a group or channel")

        clean = sanitize(text)
        if not clean.strip():
            return FilterResult(passed=False, reason="empty message")

        if not has_new_trending(clean):
            return FilterResult(passed=False, reason="no new trending header")

        ticker = extract_ticker_from_dev(clean) or extract_ticker(clean)
        if not ticker:
            return FilterResult(passed=False, reason="no ticker")

        signal = BuySignal(
            ticker=ticker,
            header=get_header_line(clean),
            chat_id=chat_id,
            message_id=message_id,
        )
        logger.info("signal_detected", ticker=ticker, chat_id=chat_id, message_id=message_id)
        return FilterResult(passed=True, signal=signal)
