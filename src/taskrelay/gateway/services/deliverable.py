"""交付物提取与校验

推理引擎的自由文本响应中，对外内容必须放在独占一行的分隔标签之间：

    <deliverable>
    ...对外内容...
    </deliverable>

也可按渠道给出专属内容 `<deliverable channel="mail">`。解析结果是一个标签联合：
Extracted / NoDeliverable / Rejected，任何无法确定的情况都返回 Rejected，
由执行器转入 needs_review，从不猜测。
"""

import re
from dataclasses import dataclass, field

from taskrelay.core.config import DELIVERABLE_TAG, NO_DELIVERABLE_SENTINEL

_OPEN_RE = re.compile(
    rf'^[ \t]*<{DELIVERABLE_TAG}(?:[ \t]+channel="(?P<channel>[^"]+)")?[ \t]*>[ \t]*\r?\n?$'
)
_CLOSE_RE = re.compile(rf"^[ \t]*</{DELIVERABLE_TAG}[ \t]*>[ \t]*\r?\n?$")

# 内部过程标记：出现在交付物中即视为泄漏
_INTERNAL_MARKER_PATTERNS = [
    re.compile(rf"</?\s*{DELIVERABLE_TAG}\b", re.IGNORECASE),
    re.compile(
        r"</?\s*(thinking|scratchpad|reasoning|analysis|work|internal"
        r"|tool_call|tool_result|function_calls|invoke)\b[^>]*>",
        re.IGNORECASE,
    ),
    re.compile(r"\[\s*internal\s*\]", re.IGNORECASE),
    # 只认大写的 STEP N:，普通的 "Step 1:" 步骤列表是正常内容
    re.compile(r"^\s*STEP\s+\d+\s*:", re.MULTILINE),
]

# 拒绝原因
REASON_MISSING = "missing"
REASON_MALFORMED = "malformed"
REASON_AMBIGUOUS = "ambiguous"
REASON_EMPTY = "empty"
REASON_INTERNAL_MARKER = "internal_marker"
REASON_MISSING_CHANNEL = "missing_channel"


@dataclass(frozen=True)
class Extracted:
    """提取成功；blocks 以渠道名为键，None 为默认块。declined 为返回哨兵的键"""

    blocks: dict[str | None, str]
    declined: frozenset[str | None] = field(default_factory=frozenset)


@dataclass(frozen=True)
class NoDeliverable:
    """推理引擎显式声明本次没有需要投递的内容"""


@dataclass(frozen=True)
class Rejected:
    reason: str
    detail: str = ""


DeliverableParse = Extracted | NoDeliverable | Rejected


def find_internal_marker(text: str) -> str | None:
    """返回第一个命中的内部标记文本，没有则返回 None"""
    for pattern in _INTERNAL_MARKER_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    return None


def extract_deliverables(response: str) -> DeliverableParse:
    """从完整响应中提取并校验交付物块"""
    raw_blocks: list[tuple[str | None, str]] = []
    current_key: str | None = None
    current_lines: list[str] | None = None

    for line in response.splitlines(keepends=True):
        open_match = _OPEN_RE.match(line)
        if open_match:
            if current_lines is not None:
                return Rejected(REASON_MALFORMED, "nested deliverable tag")
            current_key = open_match.group("channel")
            current_lines = []
            continue
        if _CLOSE_RE.match(line):
            if current_lines is None:
                return Rejected(REASON_MALFORMED, "closing tag without opening tag")
            raw_blocks.append((current_key, "".join(current_lines)))
            current_key, current_lines = None, None
            continue
        if current_lines is not None:
            current_lines.append(line)

    if current_lines is not None:
        return Rejected(REASON_MALFORMED, "unterminated deliverable block")
    if not raw_blocks:
        return Rejected(REASON_MISSING, "no deliverable block found")

    blocks: dict[str | None, str] = {}
    declined: set[str | None] = set()
    for key, raw in raw_blocks:
        if key in blocks or key in declined:
            return Rejected(REASON_AMBIGUOUS, f"multiple blocks for channel {key or 'default'}")
        # 只裁剪块边缘空白，内部内容保持原样
        content = raw.strip()
        if content == NO_DELIVERABLE_SENTINEL:
            declined.add(key)
            continue
        if not content:
            return Rejected(REASON_EMPTY, f"empty block for channel {key or 'default'}")
        marker = find_internal_marker(content)
        if marker is not None:
            return Rejected(REASON_INTERNAL_MARKER, marker)
        blocks[key] = content

    if not blocks:
        return NoDeliverable()
    return Extracted(blocks=blocks, declined=frozenset(declined))


def resolve_for_channels(
    parse: DeliverableParse,
    channels: list[str],
) -> dict[str, str | None] | Rejected:
    """把解析结果映射到每个需要内容的渠道

    Returns:
        channel -> 内容；None 表示该渠道被显式放弃（跳过，不发送）。
        任一渠道既无专属块也无默认块时返回 Rejected。
    """
    if isinstance(parse, Rejected):
        return parse
    if isinstance(parse, NoDeliverable):
        return {channel: None for channel in channels}

    resolved: dict[str, str | None] = {}
    for channel in channels:
        if channel in parse.blocks:
            resolved[channel] = parse.blocks[channel]
        elif channel in parse.declined:
            resolved[channel] = None
        elif None in parse.blocks:
            resolved[channel] = parse.blocks[None]
        elif None in parse.declined:
            resolved[channel] = None
        else:
            return Rejected(REASON_MISSING_CHANNEL, channel)
    return resolved
