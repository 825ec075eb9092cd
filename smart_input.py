"""Turn free text, receipt photos and voice notes into draft transactions.

The parsing itself is delegated to a configurable language-model provider;
everything around it (amount shorthand, relative dates, category and account
matching, history) is handled here.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from errors import NotFoundError, SmartInputError
from models import (
    Account,
    AccountType,
    CategoryType,
    FinanceCategory,
    SmartInputHistory,
    SmartInputType,
)
from periods import shift_month
from recurrence import days_in_month, local_today
from schemas import SmartInputStoreIn
from services import AccountService, CategoryService, TransactionService


logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
FALLBACK_PROVIDERS = ("gemini", "claude")

_JSON_RE = re.compile(r"\{[\s\S]*\}")
_NUMERIC_RE = re.compile(r"^\d+(\.\d+)?$")
_SHORTHAND = (
    (re.compile(r"(\d+)\s*(k|nghìn|nghin)"), 1_000),
    (re.compile(r"(\d+)\s*(tr|triệu|trieu)"), 1_000_000),
    (re.compile(r"(\d+)\s*(tỷ|ty)"), 1_000_000_000),
)
_RELATIVE_DAYS = (
    (("hôm nay", "today"), 0),
    (("hôm qua", "yesterday"), 1),
    (("tuần trước", "last week"), 7),
)
CATEGORY_KEYWORDS = {
    "ăn": ("food", "ăn uống", "thực phẩm"),
    "cafe": ("food", "ăn uống", "coffee"),
    "xăng": ("transport", "di chuyển"),
    "điện": ("utilities", "tiện ích", "điện nước"),
    "nước": ("utilities", "tiện ích", "điện nước"),
    "lương": ("salary", "thu nhập", "income"),
    "thuê": ("rent", "nhà ở", "housing"),
    "mua sắm": ("shopping",),
    "giải trí": ("entertainment",),
}
ACCOUNT_KEYWORDS = {
    "tiền mặt": AccountType.cash,
    "cash": AccountType.cash,
    "thẻ": AccountType.credit_card,
    "card": AccountType.credit_card,
    "ngân hàng": AccountType.bank,
    "bank": AccountType.bank,
}

PARSE_PROMPT = """You are a financial transaction parser. Extract transaction details from voice/text input.
{language}

Extract:
- type: "income" or "expense" (default: expense)
- amount: number (convert shortcuts to full numbers)
- description: brief description of transaction
- category_hint: suggested category (food, transport, utilities, salary, shopping, entertainment, etc.)
- account_hint: payment method if mentioned (cash, card, bank)
- date_hint: relative date if mentioned (hôm nay, hôm qua, today, yesterday)
- confidence: 0.0 to 1.0 based on clarity of input

Return ONLY valid JSON, no explanation:
{{"type":"expense","amount":50000,"description":"Coffee","category_hint":"food","date_hint":"today","confidence":0.95}}"""

RECEIPT_PROMPT = """You are a receipt/bill OCR parser. Extract transaction details from the image.
{language}

Extract:
- type: "expense" (receipts are typically expenses)
- amount: total amount in the local currency
- description: store/vendor name or main item
- category_hint: category based on vendor type (restaurant=food, gas station=transport, etc.)
- date_hint: transaction date if visible
- confidence: 0.0 to 1.0 based on image clarity and extraction certainty
- raw_text: key text extracted from receipt

Return ONLY valid JSON, no explanation:
{{"type":"expense","amount":150000,"description":"Highland Coffee","category_hint":"food","date_hint":"2026-01-04","confidence":0.92,"raw_text":"Highland Coffee - Total: 150,000 VND"}}"""

LANGUAGE_HINTS = {
    "vi": "Input is in Vietnamese. Handle Vietnamese number shortcuts: k/nghìn=×1000, tr/triệu=×1000000.",
    "en": "Input is in English.",
}
RECEIPT_HINTS = {
    "vi": "Receipt is likely in Vietnamese. Look for: Tổng cộng, Thành tiền, Total for amount. Ngày for date.",
    "en": "Receipt is in English. Look for Total, Amount, Date fields.",
}


class ProviderError(RuntimeError):
    pass


@dataclass(frozen=True)
class Attachment:
    data: bytes
    mime_type: str
    kind: str  # "image" or "audio"

    @property
    def encoded(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def _post_json(url: str, payload: dict, headers: dict[str, str], *, timeout: float) -> dict:
    body = json.dumps(payload).encode("utf-8")
    req = Request(
        url,
        data=body,
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except HTTPError as exc:
        raise ProviderError(_status_message(exc.code)) from exc
    except (URLError, TimeoutError) as exc:
        raise ProviderError("AI service unreachable. Please try again.") from exc
    except json.JSONDecodeError as exc:
        raise ProviderError("Unexpected AI service response") from exc


def _status_message(status: int) -> str:
    if status == 429:
        return "AI service rate limited. Please try again later."
    if status in (401, 403):
        return "AI service authentication failed. Please check your API key."
    if status >= 500:
        return "AI service temporarily unavailable. Please try again."
    return "AI service error. Please try again."


# --- normalization --------------------------------------------------------------


def normalize_amount(value) -> Decimal:
    """Read model output like ``35000``, ``"200k"`` or ``"15 triệu"`` as a number."""
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return abs(Decimal(str(value)))
    text = str(value or "").lower()
    for char in (",", ".", " "):
        text = text.replace(char, "")
    for pattern, factor in _SHORTHAND:
        match = pattern.search(text)
        if match:
            return Decimal(match.group(1)) * factor
    digits = re.sub(r"\D", "", text)
    return Decimal(digits) if digits else Decimal("0")


def normalize_date(hint: Optional[str], today: Optional[date] = None) -> date:
    today = today or local_today()
    if not hint:
        return today
    lowered = hint.lower()
    for words, days_back in _RELATIVE_DAYS:
        if any(word in lowered for word in words):
            return today - timedelta(days=days_back)
    if "tháng trước" in lowered or "last month" in lowered:
        first = shift_month(today, -1)
        return first.replace(day=min(today.day, days_in_month(first.year, first.month)))
    try:
        return date.fromisoformat(hint.strip()[:10])
    except ValueError:
        return today


def parse_response(text: str, today: Optional[date] = None) -> dict[str, object]:
    """Extract the JSON object a model returned and normalize its fields."""
    match = _JSON_RE.search(text or "")
    data = None
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
    if not isinstance(data, dict):
        return {
            "success": False,
            "error": "Could not parse response",
            "raw_text": text,
            "confidence": 0,
        }
    kind = str(data.get("type") or "expense").lower()
    try:
        confidence = float(data.get("confidence", DEFAULT_CONFIDENCE))
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    try:
        amount = normalize_amount(data.get("amount", 0))
    except InvalidOperation:
        amount = Decimal("0")
    return {
        "success": True,
        "type": kind if kind in ("income", "expense") else "expense",
        "amount": amount,
        "description": data.get("description") or "",
        "category_hint": data.get("category_hint"),
        "account_hint": data.get("account_hint"),
        "transaction_date": normalize_date(data.get("date_hint"), today),
        "confidence": confidence,
        "raw_text": data.get("raw_text") or text,
    }


# --- providers ------------------------------------------------------------------


class TransactionParser:
    name = ""
    supports_voice = True
    supports_vision = True

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.api_key = self.settings.ai_api_keys.get(self.name, "")
        self.model = self.settings.ai_models.get(self.name, "")

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def complete(self, prompt: str, attachment: Optional[Attachment] = None) -> str:
        raise NotImplementedError

    def _run(
        self, prompt: str, attachment: Optional[Attachment], today: Optional[date]
    ) -> dict[str, object]:
        if not self.configured:
            return {
                "success": False,
                "error": f"AI provider {self.name} is not configured",
                "confidence": 0,
            }
        try:
            text = self.complete(prompt, attachment)
        except ProviderError as exc:
            logger.warning(f"smart_input_failed: provider={self.name} error={exc}")
            return {"success": False, "error": str(exc), "confidence": 0}
        return parse_response(text, today)

    def parse_text(
        self, text: str, language: str = "vi", today: Optional[date] = None
    ) -> dict[str, object]:
        prompt = PARSE_PROMPT.format(language=LANGUAGE_HINTS[language]) + f"\n\nInput: {text}"
        return self._run(prompt, None, today)

    def parse_receipt(
        self, image: bytes, mime_type: str, language: str = "vi", today: Optional[date] = None
    ) -> dict[str, object]:
        prompt = RECEIPT_PROMPT.format(language=RECEIPT_HINTS[language])
        return self._run(prompt, Attachment(image, mime_type, "image"), today)

    def parse_voice(
        self, audio: bytes, mime_type: str, language: str = "vi", today: Optional[date] = None
    ) -> dict[str, object]:
        if not self.supports_voice:
            raise SmartInputError(f"{self.name} does not support voice input")
        prompt = PARSE_PROMPT.format(language=LANGUAGE_HINTS[language])
        return self._run(prompt, Attachment(audio, mime_type, "audio"), today)


class ClaudeParser(TransactionParser):
    name = "claude"
    url = "https://api.anthropic.com/v1/messages"

    def complete(self, prompt: str, attachment: Optional[Attachment] = None) -> str:
        content: object = prompt
        if attachment is not None:
            content = [
                {"type": "text", "text": prompt},
                {
                    "type": "image" if attachment.kind == "image" else "document",
                    "source": {
                        "type": "base64",
                        "media_type": attachment.mime_type,
                        "data": attachment.encoded,
                    },
                },
            ]
        response = _post_json(
            self.url,
            {
                "model": self.model,
                "max_tokens": 1024,
                "messages": [{"role": "user", "content": content}],
            },
            {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            timeout=self.settings.smart_input_timeout_secs,
        )
        try:
            return response["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("Unexpected AI service response") from exc


class OpenAICompatibleParser(TransactionParser):
    """Chat-completions style APIs: OpenAI, OpenRouter and Ollama."""

    name = "openai"
    supports_voice = False
    base_url = "https://api.openai.com/v1"

    def _base_url(self) -> str:
        return self.base_url

    def complete(self, prompt: str, attachment: Optional[Attachment] = None) -> str:
        content: object = prompt
        if attachment is not None:
            data_url = f"data:{attachment.mime_type};base64,{attachment.encoded}"
            content = [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": data_url}},
            ]
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        response = _post_json(
            f"{self._base_url()}/chat/completions",
            {
                "model": self.model,
                "messages": [{"role": "user", "content": content}],
                "temperature": 0.1,
            },
            headers,
            timeout=self.settings.smart_input_timeout_secs,
        )
        try:
            return response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("Unexpected AI service response") from exc


class OpenRouterParser(OpenAICompatibleParser):
    name = "openrouter"
    base_url = "https://openrouter.ai/api/v1"


class OllamaParser(OpenAICompatibleParser):
    name = "ollama"

    @property
    def configured(self) -> bool:
        return bool(self.settings.ollama_base_url)

    def _base_url(self) -> str:
        return self.settings.ollama_base_url.rstrip("/") + "/v1"


class GeminiParser(TransactionParser):
    name = "gemini"
    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def complete(self, prompt: str, attachment: Optional[Attachment] = None) -> str:
        parts: list[dict] = [{"text": prompt}]
        if attachment is not None:
            parts.append(
                {"inline_data": {"mime_type": attachment.mime_type, "data": attachment.encoded}}
            )
        url = (
            f"{self.base_url}/models/{quote(self.model)}:generateContent"
            f"?key={quote(self.api_key)}"
        )
        response = _post_json(
            url,
            {"contents": [{"parts": parts}]},
            {},
            timeout=self.settings.smart_input_timeout_secs,
        )
        try:
            return response["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("Unexpected AI service response") from exc


PARSERS: dict[str, type[TransactionParser]] = {
    "claude": ClaudeParser,
    "openai": OpenAICompatibleParser,
    "openrouter": OpenRouterParser,
    "ollama": OllamaParser,
    "gemini": GeminiParser,
}


def make_parser(name: Optional[str] = None, settings: Optional[Settings] = None) -> TransactionParser:
    settings = settings or get_settings()
    name = (name or settings.smart_input_provider).lower()
    if name not in PARSERS:
        raise ValueError(f"Unsupported smart input provider: {name}")
    return PARSERS[name](settings)


# --- matching -------------------------------------------------------------------


def match_category(
    session: Session, user_id: int, hint: str, type: CategoryType = CategoryType.expense
) -> Optional[FinanceCategory]:
    categories = CategoryService(session, user_id).list_all(type)
    wanted = hint.strip().lower()
    if not wanted:
        return None
    for category in categories:
        if category.name.lower() == wanted:
            return category
    for category in categories:
        name = category.name.lower()
        if name in wanted or wanted in name:
            return category
    for keyword, terms in CATEGORY_KEYWORDS.items():
        if keyword not in wanted:
            continue
        for category in categories:
            name = category.name.lower()
            if any(term in name for term in terms):
                return category
    return None


def match_account(session: Session, user_id: int, hint: Optional[str]) -> Optional[Account]:
    accounts = AccountService(session, user_id).list(include_inactive=False)
    if not accounts:
        return None
    wanted = (hint or "").strip().lower()
    if wanted:
        for account in accounts:
            if account.name.lower() == wanted:
                return account
        for keyword, account_type in ACCOUNT_KEYWORDS.items():
            if keyword in wanted:
                for account in accounts:
                    if account.account_type == account_type:
                        return account
    return accounts[0]


# --- service --------------------------------------------------------------------


def _json_safe(result: dict[str, object]) -> dict[str, object]:
    safe: dict[str, object] = {}
    for key, value in result.items():
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, date):
            value = value.isoformat()
        safe[key] = value
    return safe


class SmartInputService:
    def __init__(
        self, session: Session, user_id: int, parser: Optional[TransactionParser] = None
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.settings = get_settings()
        self.parser = parser or make_parser(settings=self.settings)

    def _fallback(self, capability: str) -> TransactionParser:
        if getattr(self.parser, capability):
            return self.parser
        for name in FALLBACK_PROVIDERS:
            candidate = make_parser(name, self.settings)
            if candidate.configured:
                return candidate
        kind = "voice" if capability == "supports_voice" else "image"
        raise SmartInputError(f"No configured AI provider supports {kind} input")

    def _record(
        self,
        input_type: SmartInputType,
        raw_text: Optional[str],
        result: dict[str, object],
        provider: Optional[str],
        language: str,
    ) -> SmartInputHistory:
        history = SmartInputHistory(
            user_id=self.user_id,
            input_type=input_type,
            raw_text=raw_text,
            parsed_result=_json_safe(result),
            ai_provider=provider,
            language=language,
            confidence=Decimal(str(result.get("confidence", 0))),
            transaction_saved=False,
        )
        self.session.add(history)
        self.session.commit()
        return history

    def _enrich(self, result: dict[str, object], history: SmartInputHistory) -> dict[str, object]:
        kind = CategoryType(result.get("type") or "expense")
        category = None
        if result.get("category_hint"):
            category = match_category(
                self.session, self.user_id, str(result["category_hint"]), kind
            )
        account = match_account(self.session, self.user_id, result.get("account_hint"))
        return {
            "type": kind.value,
            "amount": result.get("amount", Decimal("0")),
            "description": result.get("description") or "",
            "suggested_category": (
                {"id": category.id, "name": category.name} if category else None
            ),
            "suggested_account": {"id": account.id, "name": account.name} if account else None,
            "transaction_date": result.get("transaction_date"),
            "confidence": result.get("confidence", DEFAULT_CONFIDENCE),
            "raw_text": result.get("raw_text"),
            "history_id": history.id,
        }

    def _finish(
        self,
        input_type: SmartInputType,
        raw_text: Optional[str],
        result: dict[str, object],
        parser: Optional[TransactionParser],
        language: str,
    ) -> dict[str, object]:
        if not result.get("success"):
            raise SmartInputError(str(result.get("error") or "Failed to parse input"))
        history = self._record(
            input_type, raw_text, result, parser.name if parser else None, language
        )
        logger.info(
            f"smart_input_parsed: user_id={self.user_id} type={input_type.value} "
            f"provider={history.ai_provider} history_id={history.id}"
        )
        return self._enrich(result, history)

    def parse_text(
        self, text: str, language: str = "vi", today: Optional[date] = None
    ) -> dict[str, object]:
        text = text.strip()
        normalized = text.replace(",", "").replace(" ", "")
        if _NUMERIC_RE.match(normalized):
            result = {
                "success": True,
                "type": "expense",
                "amount": Decimal(normalized),
                "description": "",
                "transaction_date": today or local_today(),
                "confidence": 0.5,
                "raw_text": text,
            }
            return self._finish(SmartInputType.text, text, result, None, language)
        result = self.parser.parse_text(text, language, today)
        return self._finish(SmartInputType.text, text, result, self.parser, language)

    def parse_receipt(
        self,
        image: bytes,
        mime_type: str = "image/jpeg",
        language: str = "vi",
        notes: Optional[str] = None,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        parser = self._fallback("supports_vision")
        result = parser.parse_receipt(image, mime_type, language, today)
        input_type = SmartInputType.text_image if notes else SmartInputType.image
        enriched = self._finish(input_type, notes, result, parser, language)
        if notes:
            enriched["notes"] = notes
        return enriched

    def parse_voice(
        self,
        audio: bytes,
        mime_type: str = "audio/webm",
        language: str = "vi",
        today: Optional[date] = None,
    ) -> dict[str, object]:
        parser = self._fallback("supports_voice")
        result = parser.parse_voice(audio, mime_type, language, today)
        raw = result.get("raw_text") if result.get("success") else None
        return self._finish(SmartInputType.voice, raw, result, parser, language)

    def store(self, data: SmartInputStoreIn):
        txn = TransactionService(self.session, self.user_id).create(data)
        if data.history_id is not None:
            self.session.execute(
                update(SmartInputHistory)
                .where(
                    SmartInputHistory.id == data.history_id,
                    SmartInputHistory.user_id == self.user_id,
                )
                .values(transaction_id=txn.id, transaction_saved=True)
            )
            self.session.commit()
        return txn

    def history(self, limit: int = 50) -> list[SmartInputHistory]:
        stmt = (
            select(SmartInputHistory)
            .where(
                SmartInputHistory.user_id == self.user_id,
                SmartInputHistory.deleted_at.is_(None),
            )
            .order_by(SmartInputHistory.created_at.desc(), SmartInputHistory.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def delete_history(self, history_id: int) -> None:
        history = self.session.get(SmartInputHistory, history_id)
        if history is None or history.user_id != self.user_id or history.is_deleted:
            raise NotFoundError("Smart input history not found")
        history.deleted_at = datetime.utcnow()
        self.session.commit()
