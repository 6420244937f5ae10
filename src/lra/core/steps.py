from __future__ import annotations

from dataclasses import dataclass
import enum
import re
from typing import TYPE_CHECKING, Final, Mapping

if TYPE_CHECKING:
    from lra.core.features import Feature


class ActionKind(str, enum.Enum):
    NAVIGATE = "navigate"
    CLICK = "click"
    FILL = "fill"
    VERIFY = "verify"
    LOGIN = "login"
    WAIT = "wait"
    DEFAULT = "default"


NAVIGATE_KEYWORDS: Final = ("打开", "进入", "访问", "前往", "open", "visit", "go to", "navigate")
CLICK_KEYWORDS: Final = ("点击", "单击", "click")
FILL_KEYWORDS: Final = ("输入", "填写", "填入", "input", "fill", "type")
VERIFY_KEYWORDS: Final = ("验证", "检查", "确认", "verify", "check", "confirm")
LOGIN_KEYWORDS: Final = ("登录", "login", "log in", "sign in")
WAIT_KEYWORDS: Final = ("等待", "wait")

# Tested top to bottom, first match wins. A step naming two actions is
# classified by whichever group comes first here, not by word position.
KEYWORD_PRECEDENCE: Final[tuple[tuple[ActionKind, tuple[str, ...]], ...]] = (
    (ActionKind.NAVIGATE, NAVIGATE_KEYWORDS),
    (ActionKind.CLICK, CLICK_KEYWORDS),
    (ActionKind.FILL, FILL_KEYWORDS),
    (ActionKind.VERIFY, VERIFY_KEYWORDS),
    (ActionKind.LOGIN, LOGIN_KEYWORDS),
    (ActionKind.WAIT, WAIT_KEYWORDS),
)

STUDENT_ID_TOKENS: Final = ("学号", "student id", "student-id")
PASSWORD_TOKENS: Final = ("密码", "password")

DEFAULT_ROUTES: Final[Mapping[str, str]] = {
    "登录页": "/login",
    "登录页面": "/login",
    "课程列表页": "/courses",
    "课程列表": "/courses",
    "已选课程页": "/selected",
    "已选课程": "/selected",
    "课表页": "/schedule",
    "课表": "/schedule",
    "个人中心页": "/profile",
    "个人中心": "/profile",
    "首页": "/",
    "login page": "/login",
    "course list": "/courses",
    "selected courses": "/selected",
    "schedule": "/schedule",
    "profile": "/profile",
    "home page": "/",
}

_QUOTES = "\"'`“”‘’「」『』《》【】"
_QUOTES_RE = re.compile(f"[{re.escape(_QUOTES)}]")
_ABSOLUTE_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

_INPUT_PATTERNS: Final = (
    re.compile(r"在\s*(?P<field>\S+?)\s*(?:中|里|框中|框里)?\s*(?:输入|填写|填入)\s*(?P<value>\S+)"),
    re.compile(r"(?:输入|填写|填入)\s*(?P<field>\S+)\s+(?P<value>\S+)"),
    re.compile(r"(?i)(?:input|fill(?:\s+in)?|type)\s+(?P<field>\S+)\s+(?:with\s+|as\s+)?(?P<value>\S+)"),
)

ELEMENT_SUFFIXES: Final = ("按钮", "链接", "button", "link")
VERIFY_FILLERS: Final = (
    "页面显示",
    "页面包含",
    "页面上有",
    "显示",
    "包含",
    "出现",
    "存在",
    "page shows",
    "page contains",
    "shows",
    "contains",
)

_WAIT_RE = re.compile(r"(?P<n>\d+)\s*(?P<unit>毫秒|秒|(?:ms|seconds?|secs?|s)(?![a-z]))?", re.IGNORECASE)
DEFAULT_WAIT_MS = 2_000


@dataclass(frozen=True)
class FieldInput:
    field: str
    value: str


def _contains(text: str, keywords: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def classify(step: str) -> ActionKind:
    """Map a step to an action kind by keyword groups in fixed precedence."""
    for kind, keywords in KEYWORD_PRECEDENCE:
        if _contains(step, keywords):
            return kind
    return ActionKind.DEFAULT


def is_credentials_step(step: str) -> bool:
    return _contains(step, STUDENT_ID_TOKENS) and _contains(step, PASSWORD_TOKENS)


def strip_quotes(text: str) -> str:
    return _QUOTES_RE.sub("", text).strip()


def strip_leading_verb(text: str, verbs: tuple[str, ...]) -> str:
    text = text.strip()
    lowered = text.lower()
    for verb in sorted(verbs, key=len, reverse=True):
        if lowered.startswith(verb):
            return text[len(verb):].strip()
    return text


def is_absolute_url(target: str) -> bool:
    return bool(_ABSOLUTE_RE.match(target))


def resolve_route(text: str, routes: Mapping[str, str]) -> str | None:
    """Return the path of the longest route label `text` starts with."""
    lowered = text.lower()
    for label in sorted(routes, key=len, reverse=True):
        if lowered.startswith(label.lower()):
            return routes[label]
    return None


def clean_target(step: str) -> str:
    return strip_quotes(strip_leading_verb(step, NAVIGATE_KEYWORDS + CLICK_KEYWORDS))


def extract_target(step: str, routes: Mapping[str, str] = DEFAULT_ROUTES) -> str:
    cleaned = clean_target(step)
    if is_absolute_url(cleaned):
        return cleaned
    return resolve_route(cleaned, routes) or cleaned


def extract_click_target(step: str) -> str:
    """Visible name of the element a click step refers to; routes do not apply."""
    cleaned = clean_target(step)
    lowered = cleaned.lower()
    for suffix in ELEMENT_SUFFIXES:
        if lowered.endswith(suffix) and len(cleaned) > len(suffix):
            return cleaned[: -len(suffix)].strip()
    return cleaned


def extract_verify_target(step: str) -> str:
    text = strip_leading_verb(step, VERIFY_KEYWORDS)
    text = strip_leading_verb(text, VERIFY_FILLERS)
    return strip_quotes(text)


def extract_input(step: str, feature: Feature | None = None) -> FieldInput:
    for pattern in _INPUT_PATTERNS:
        match = pattern.search(step)
        if match:
            field = strip_quotes(match.group("field"))
            value = strip_quotes(match.group("value"))
            if field and value:
                return FieldInput(field=field, value=value)
    if feature is not None and feature.test_data is not None:
        return FieldInput(field=feature.test_data.field, value=feature.test_data.value)
    return FieldInput(field="input", value="test")


def parse_wait_ms(step: str, default: int = DEFAULT_WAIT_MS) -> int:
    match = _WAIT_RE.search(step)
    if not match:
        return default
    n = int(match.group("n"))
    unit = (match.group("unit") or "").lower()
    if unit in {"秒", "s", "sec", "secs", "second", "seconds"}:
        return n * 1000
    return n
