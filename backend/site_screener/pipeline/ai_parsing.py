"""
Parsing of free-form AI answers.

Models are asked for JSON but do not always comply. Every answer is turned
into either a StructuredResult (valid JSON) or a RawResult (the raw text plus
whatever could be pulled out of it with regular expressions). Parsing never
raises.
"""
import json
import logging
import re
from typing import Any, Literal

from pydantic import BaseModel

from site_screener.models import CompanyInfo, EmailInfo, ResultLabel

logger = logging.getLogger(__name__)

NO_REASON = "No specific reason given"

RESULT_PATTERN = re.compile(r'result["\s]*:["\s]*(Y|N)', re.IGNORECASE)
REASON_PATTERN = re.compile(r'reason["\s]*:["\s]*"([^"]+)"', re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg")
TEST_MAILBOXES = ("test@", "demo@", "example@")


class StructuredResult(BaseModel):
    kind: Literal["parsed"] = "parsed"
    data: Any


class RawResult(BaseModel):
    kind: Literal["raw"] = "raw"
    raw: str
    extracted: dict[str, Any] = {}


ParsedAnswer = StructuredResult | RawResult


class Classification(BaseModel):
    result: ResultLabel
    reason: str
    answer: ParsedAnswer


def strip_code_fences(content: str) -> str:
    # 模型有时会把 JSON 包在 markdown 代码块里
    content = content.strip()
    if content.startswith("```json"):
        content = content[7:]
    if content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    return content.strip()


def parse_answer(content: str | None) -> ParsedAnswer:
    text = strip_code_fences(content or "")
    try:
        return StructuredResult(data=json.loads(text))
    except json.JSONDecodeError:
        pass
    # JSON 前后夹带了说明文字
    match = JSON_OBJECT_PATTERN.search(text)
    if match:
        try:
            return StructuredResult(data=json.loads(match.group(0)))
        except json.JSONDecodeError:
            pass
    return RawResult(raw=content or "")


def parse_classification(content: str | None) -> Classification:
    """Y/N label and reason from a classification answer; defaults to N."""
    answer = parse_answer(content)
    if isinstance(answer, StructuredResult) and isinstance(answer.data, dict):
        label = str(answer.data.get("result", "")).strip().upper()
        reason = answer.data.get("reason") or NO_REASON
        return Classification(
            result=ResultLabel.Y if label == "Y" else ResultLabel.N,
            reason=str(reason),
            answer=answer,
        )

    raw = content or ""
    result_match = RESULT_PATTERN.search(raw)
    reason_match = REASON_PATTERN.search(raw)
    extracted: dict[str, Any] = {}
    if result_match:
        extracted["result"] = result_match.group(1).upper()
    if reason_match:
        extracted["reason"] = reason_match.group(1)
    if not extracted:
        logger.warning(f"Unparseable classification answer: {raw[:100]!r}")
    return Classification(
        result=ResultLabel(extracted.get("result", ResultLabel.N.value)),
        reason=extracted.get("reason", raw[:200]),
        answer=RawResult(raw=raw, extracted=extracted),
    )


def is_valid_email(email: str) -> bool:
    lowered = email.lower()
    if lowered.endswith(IMAGE_EXTENSIONS):
        return False
    if "cdn" in lowered.split("@")[-1]:
        return False
    if lowered.startswith(TEST_MAILBOXES):
        return False
    return bool(EMAIL_PATTERN.fullmatch(email))


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v).strip() for v in value if v and str(v).strip()]
    return []


def parse_emails(content: str | None) -> list[EmailInfo]:
    """Valid, de-duplicated email addresses from an extraction answer."""
    answer = parse_answer(content)
    candidates: list[EmailInfo] = []
    if isinstance(answer, StructuredResult):
        items = answer.data.get("emails", []) if isinstance(answer.data, dict) else answer.data
        for item in items if isinstance(items, list) else []:
            if isinstance(item, str):
                candidates.append(EmailInfo(email=item.strip()))
            elif isinstance(item, dict) and item.get("email"):
                candidates.append(
                    EmailInfo(
                        email=str(item["email"]).strip(),
                        source=str(item.get("source") or ""),
                        owner_name=item.get("ownerName") or item.get("owner_name"),
                        type=str(item.get("type") or "other"),
                    )
                )
    else:
        candidates = [EmailInfo(email=e, source="text") for e in EMAIL_PATTERN.findall(answer.raw)]

    seen: set[str] = set()
    emails = []
    for info in candidates:
        key = info.email.lower()
        if key in seen or not is_valid_email(info.email):
            continue
        seen.add(key)
        emails.append(info)
    return emails


def parse_company_info(content: str | None) -> CompanyInfo:
    answer = parse_answer(content)
    if not isinstance(answer, StructuredResult) or not isinstance(answer.data, dict):
        # 非 JSON 回答时，把第一行非空文本当作公司名
        first_line = next((line.strip() for line in (content or "").splitlines() if line.strip()), "")
        name = first_line[:100]
        return CompanyInfo(names=[name] if name else [], primary_name=name)

    data = answer.data
    names = _as_str_list(data.get("names"))
    primary = str(data.get("primaryName") or data.get("primary_name") or (names[0] if names else ""))
    if primary and primary not in names:
        names.insert(0, primary)
    return CompanyInfo(
        names=names,
        founder_names=_as_str_list(data.get("founderNames") or data.get("founder_names")),
        brand_names=_as_str_list(data.get("brandNames") or data.get("brand_names")),
        full_name=str(data.get("fullName") or data.get("full_name") or ""),
        primary_name=primary,
    )
