from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

import httpx
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, TypeAdapter

log = logging.getLogger(__name__)

FEEDBACK_TYPES = ("tool_request", "bug_report")
HONEYPOT_FIELD = "website"


class FeedbackError(ValueError):
    """Submission the caller has to fix; maps to a 400."""


def clean_text(value: Any, max_len: int = 2000) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_len]


def _text(max_len: int, placeholder: str = ""):
    def _clean(value: Any) -> str:
        return clean_text(value, max_len) or placeholder

    return BeforeValidator(_clean)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["tool_request"] = "tool_request"
    tool_name: Annotated[str, _text(120, "Not specified")] = Field("Not specified", alias="toolName")
    description: Annotated[str, _text(5000)] = ""
    category: Annotated[str, _text(80, "other")] = "other"
    email: Annotated[str, _text(160, "Not provided")] = "Not provided"
    page_url: Annotated[str, _text(400, "Unknown")] = Field("Unknown", alias="pageUrl")

    def build_payload(self, access_key: str, timestamp: Optional[str] = None) -> Dict[str, Any]:
        return {
            "access_key": access_key,
            "subject": f"Tool Suggestion: {self.tool_name}",
            "from_name": "Plainly Tool Suggestion",
            "tool_name": self.tool_name,
            "description": self.description,
            "suggested_category": self.category,
            "submitter_email": self.email,
            "page_url": self.page_url,
            "timestamp": timestamp or _utc_timestamp(),
        }


class BugReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["bug_report"] = "bug_report"
    calculator: Annotated[str, _text(160, "Unknown")] = Field("Unknown", alias="calculatorName")
    calculator_url: Annotated[str, _text(400, "Unknown")] = Field("Unknown", alias="calculatorUrl")
    issue_type: Annotated[str, _text(60, "bug")] = Field("bug", alias="issueType")
    description: Annotated[str, _text(5000)] = ""
    expected_behavior: Annotated[str, _text(2000)] = Field("", alias="expectedBehavior")
    steps: Annotated[str, _text(3000)] = ""
    email: Annotated[str, _text(160, "Not provided")] = "Not provided"
    browser: Annotated[str, _text(500, "Unknown")] = "Unknown"

    def build_payload(self, access_key: str, timestamp: Optional[str] = None) -> Dict[str, Any]:
        return {
            "access_key": access_key,
            "subject": f"Bug Report: {self.calculator}",
            "from_name": "Plainly Bug Report",
            "calculator": self.calculator,
            "calculator_url": self.calculator_url,
            "issue_type": self.issue_type,
            "description": self.description,
            "expected_behavior": self.expected_behavior,
            "steps_to_reproduce": self.steps,
            "reporter_email": self.email,
            "browser_info": self.browser,
            "timestamp": timestamp or _utc_timestamp(),
        }


Submission = Annotated[Union[ToolRequest, BugReport], Field(discriminator="type")]
_submission_adapter: TypeAdapter = TypeAdapter(Submission)


def is_honeypot_filled(body: Dict[str, Any]) -> bool:
    return bool(clean_text(body.get(HONEYPOT_FIELD), 200))


def parse_submission(body: Dict[str, Any]) -> Union[ToolRequest, BugReport]:
    """Validate a raw feedback body into one of the two submission shapes.

    Raises FeedbackError with a caller-safe message.
    """
    kind = clean_text(body.get("type"), 40)
    if kind not in FEEDBACK_TYPES:
        raise FeedbackError("Invalid feedback type.")
    submission = _submission_adapter.validate_python({**body, "type": kind})
    if not submission.description:
        raise FeedbackError("Description is required.")
    return submission


class FeedbackRelay:
    """Forwards one submission to the form-relay provider."""

    def __init__(self, http: httpx.AsyncClient, endpoint: str, timeout: float = 20.0) -> None:
        self.http = http
        self.endpoint = endpoint
        self.timeout = timeout

    async def submit(self, payload: Dict[str, Any]) -> bool:
        try:
            resp = await self.http.post(
                self.endpoint,
                json=payload,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            log.warning("feedback: relay request error: %r", exc)
            return False

        try:
            data = resp.json()
        except ValueError:
            data = None

        if not resp.is_success:
            log.warning("feedback: relay HTTP %s: %s", resp.status_code, resp.text[:400])
            return False
        if isinstance(data, dict) and data.get("success") is False:
            log.warning("feedback: relay rejected submission: %s", data.get("message"))
            return False
        return True
