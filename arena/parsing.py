"""Extract structured fields from free-form participant output.

Parsing runs a cascade of strategies. Each strategy is a pure function
``(text, shape) -> dict | None`` and only fills fields the earlier strategies
left empty:

1. exact      -- ``FIELD_NAME:`` markers at the start of a line
2. tolerant   -- markers in any case/spacing, markdown-decorated or inline
                 (``**Clarity** = 8/10``)
3. heuristic  -- longest paragraph for the main text field, bare numbers in
                 [1, 10] for missing scores in declared order, PASS/FAIL words
4. synthesis  -- deterministic, flagged defaults derived from the task category

The parser never raises. Every numeric field is clamped to [1, 10] and the
result carries a parse confidence used for logging only.
"""

import logging
import re
from dataclasses import dataclass, field

from arena.models import TaskCategory

logger = logging.getLogger(__name__)

SCORE_MIN = 1.0
SCORE_MAX = 10.0
NEUTRAL_SCORE = 5.0
_MIN_PARAGRAPH_CHARS = 40

_STRATEGY_WEIGHTS = {"exact": 1.0, "tolerant": 0.8, "heuristic": 0.5, "synthesized": 0.0}

SUB_SCORES = ("clarity", "structure", "accuracy", "usefulness", "creativity")


@dataclass(frozen=True)
class FieldSpec:
    name: str                # marker as it appears in prompts, e.g. "IMPROVED_TEXT"
    kind: str                # "text" | "score" | "list" | "verdict"
    required: bool = True


@dataclass(frozen=True)
class ExpectedShape:
    name: str
    fields: tuple[FieldSpec, ...]
    main: str | None = None  # text field filled by the longest-paragraph heuristic

    def names(self) -> list[str]:
        return [f.name for f in self.fields]

    def of_kind(self, kind: str) -> list[FieldSpec]:
        return [f for f in self.fields if f.kind == kind]


GENERATION = ExpectedShape(
    "generation",
    (
        FieldSpec("RATIONALE", "text"),
        FieldSpec("IMPROVED_TEXT", "text"),
        FieldSpec("CONFIDENCE", "score"),
    ),
    main="IMPROVED_TEXT",
)

ANSWER = ExpectedShape(
    "answer",
    (
        FieldSpec("RATIONALE", "text"),
        FieldSpec("ANSWER", "text"),
        FieldSpec("CONFIDENCE", "score"),
    ),
    main="ANSWER",
)

EVALUATION = ExpectedShape(
    "evaluation",
    tuple(FieldSpec(s.upper(), "score") for s in SUB_SCORES)
    + (
        FieldSpec("CRITIQUE", "text"),
        FieldSpec("SUGGESTIONS", "list", required=False),
    ),
    main="CRITIQUE",
)

REFINE = ExpectedShape(
    "refine",
    (
        FieldSpec("WEAKNESSES", "text"),
        FieldSpec("REVISED_TEXT", "text"),
    ),
    main="REVISED_TEXT",
)

PROBE = ExpectedShape(
    "probe",
    (
        FieldSpec("VERDICT", "verdict"),
        FieldSpec("NOTES", "text", required=False),
    ),
)

# Static guidance appended to the baseline when no usable text was produced
_CATEGORY_GUIDANCE = {
    TaskCategory.REASONING: (
        "Work through the problem step by step, state every assumption explicitly, "
        "and finish with a clearly marked final answer."
    ),
    TaskCategory.PLANNING: (
        "Break the goal into ordered phases with owners, deadlines and measurable "
        "milestones, and list the main risks with a mitigation for each."
    ),
    TaskCategory.WRITING: (
        "State the audience and purpose up front, keep one idea per paragraph, "
        "and close with a short summary of the key points."
    ),
    TaskCategory.CREATIVE: (
        "Define the audience, tone and length, name the genre and point of view, "
        "and give one concrete constraint to anchor the piece."
    ),
    TaskCategory.TECHNICAL: (
        "Specify the language, runtime and versions, describe inputs, outputs and "
        "error handling, and ask for tested, commented code."
    ),
    TaskCategory.ANALYSIS: (
        "Name the data sources and comparison criteria, separate findings from "
        "interpretation, and quantify uncertainty where possible."
    ),
}


@dataclass
class ParseResult:
    fields: dict[str, object]
    sources: dict[str, str] = field(default_factory=dict)   # field -> strategy that filled it
    confidence: float = 0.0

    def get(self, name: str, default=None):
        return self.fields.get(name, default)

    @property
    def synthesized(self) -> list[str]:
        return [name for name, source in self.sources.items() if source == "synthesized"]


# --- value helpers ---

def clamp_score(value: float) -> float:
    return max(SCORE_MIN, min(SCORE_MAX, float(value)))


_SCORE_RE = re.compile(r"(-?\d+(?:\.\d+)?)\s*(%)?")
_BARE_NUMBER_RE = re.compile(r"(?<![\d.\w/])(\d+(?:\.\d+)?)(?![\d.%\w])")
_VERDICT_RE = re.compile(r"\b(PASS(?:ED)?|FAIL(?:ED)?)\b", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")
_FENCE_RE = re.compile(r"^\s*```.*$", re.MULTILINE)


def _to_score(value: str) -> float | None:
    match = _SCORE_RE.search(value)
    if not match:
        return None
    number = float(match.group(1))
    if match.group(2):
        number /= 10.0
    return clamp_score(number)


def _to_list(value: str) -> list[str]:
    items = [m.group(1).strip() for m in map(_BULLET_RE.match, value.splitlines()) if m]
    if items:
        return items
    return [part.strip() for part in value.split(";") if part.strip()]


def _to_verdict(value: str) -> str | None:
    match = _VERDICT_RE.search(value)
    if not match:
        return None
    return "PASS" if match.group(1).upper().startswith("PASS") else "FAIL"


def clean_text(value: str) -> str:
    """Strip code fences, markdown emphasis around the whole value and wrapping quotes."""
    text = _FENCE_RE.sub("", value).strip()
    text = text.strip("*").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'" and text[0] not in text[1:-1]:
        text = text[1:-1].strip()
    return text


def _convert(spec: FieldSpec, raw: str):
    if spec.kind == "score":
        return _to_score(raw)
    if spec.kind == "list":
        return _to_list(raw) or None
    if spec.kind == "verdict":
        return _to_verdict(raw)
    text = clean_text(raw)
    return text or None


def _sections(text: str, matches: list[tuple[int, int, str]]) -> dict[str, str]:
    """Map each field to the text between its marker and the next marker."""
    matches = sorted(matches)
    sections: dict[str, str] = {}
    for i, (_, end, name) in enumerate(matches):
        stop = matches[i + 1][0] if i + 1 < len(matches) else len(text)
        if name not in sections:
            sections[name] = text[end:stop]
    return sections


def _collect(shape: ExpectedShape, sections: dict[str, str]) -> dict | None:
    found = {}
    for spec in shape.fields:
        if spec.name in sections:
            value = _convert(spec, sections[spec.name])
            if value is not None:
                found[spec.name] = value
    return found or None


# --- strategies ---

def parse_exact(text: str, shape: ExpectedShape) -> dict | None:
    names = "|".join(re.escape(n) for n in shape.names())
    pattern = re.compile(rf"^({names}):[ \t]*", re.MULTILINE)
    matches = [(m.start(), m.end(), m.group(1)) for m in pattern.finditer(text)]
    if not matches:
        return None
    return _collect(shape, _sections(text, matches))


def _tolerant_pattern(name: str) -> re.Pattern:
    words = r"[\s_\-]*".join(re.escape(w) for w in name.lower().split("_"))
    return re.compile(rf"(?<![A-Za-z]){words}[\s*_]*(?:[:=]|\s-\s)[ \t]*", re.IGNORECASE)


def parse_tolerant(text: str, shape: ExpectedShape) -> dict | None:
    matches = []
    for name in shape.names():
        m = _tolerant_pattern(name).search(text)
        if m:
            matches.append((m.start(), m.end(), name))
    if not matches:
        return None
    return _collect(shape, _sections(text, matches))


def parse_heuristic(text: str, shape: ExpectedShape) -> dict | None:
    found: dict[str, object] = {}

    if shape.main:
        paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
        paragraphs = [p for p in paragraphs if len(p) > _MIN_PARAGRAPH_CHARS]
        if paragraphs:
            longest = clean_text(max(paragraphs, key=len))
            if longest:
                found[shape.main] = longest

    scores = shape.of_kind("score")
    if scores:
        numbers = [float(m.group(1)) for m in _BARE_NUMBER_RE.finditer(text)]
        in_range = [n for n in numbers if SCORE_MIN <= n <= SCORE_MAX]
        for spec, value in zip(scores, in_range):
            found[spec.name] = clamp_score(value)

    for spec in shape.of_kind("verdict"):
        verdict = _to_verdict(text)
        if verdict:
            found[spec.name] = verdict

    for spec in shape.of_kind("list"):
        items = _to_list("\n".join(line for line in text.splitlines() if _BULLET_RE.match(line)))
        if items:
            found[spec.name] = items

    return found or None


STRATEGIES = (
    ("exact", parse_exact),
    ("tolerant", parse_tolerant),
    ("heuristic", parse_heuristic),
)


def synthesize_defaults(
    shape: ExpectedShape,
    missing: list[FieldSpec],
    category: TaskCategory,
    baseline: str,
) -> dict:
    """Deterministic stand-ins for fields no strategy could extract."""
    guidance = _CATEGORY_GUIDANCE.get(category, _CATEGORY_GUIDANCE[TaskCategory.REASONING])
    defaults: dict[str, object] = {}
    for spec in missing:
        if spec.kind == "score":
            defaults[spec.name] = NEUTRAL_SCORE
        elif spec.kind == "list":
            defaults[spec.name] = []
        elif spec.kind == "verdict":
            defaults[spec.name] = "FAIL"
        elif spec.name == shape.main:
            defaults[spec.name] = f"{baseline.strip()}\n\n{guidance}" if baseline.strip() else guidance
        elif not spec.required:
            defaults[spec.name] = ""
        else:
            label = spec.name.lower().replace("_", " ")
            defaults[spec.name] = f"[no {label} could be extracted from the response]"
    return defaults


def _missing(shape: ExpectedShape, fields: dict, required_only: bool) -> list[FieldSpec]:
    return [f for f in shape.fields if f.name not in fields and (f.required or not required_only)]


def parse(
    raw_text: str,
    shape: ExpectedShape,
    category: TaskCategory = TaskCategory.REASONING,
    baseline: str = "",
) -> ParseResult:
    """Run the strategy cascade and return a best-effort result.

    Args:
        raw_text: Participant output, possibly empty or malformed.
        shape: The fields to extract.
        category: Task category used for synthesized defaults.
        baseline: Text the participant was asked to improve; seeds the
            synthesized main field so no unrelated text is reused.
    """
    text = raw_text or ""
    fields: dict[str, object] = {}
    sources: dict[str, str] = {}

    for strategy_name, strategy in STRATEGIES:
        if not _missing(shape, fields, required_only=True):
            break
        found = strategy(text, shape)
        if not found:
            continue
        for name, value in found.items():
            if name not in fields:
                fields[name] = value
                sources[name] = strategy_name

    for name, value in synthesize_defaults(shape, _missing(shape, fields, required_only=False),
                                           category, baseline).items():
        fields[name] = value
        spec = next(f for f in shape.fields if f.name == name)
        if spec.required:
            sources[name] = "synthesized"

    weights = [_STRATEGY_WEIGHTS[source] for source in sources.values()]
    confidence = sum(weights) / len(weights) if weights else 0.0
    result = ParseResult(fields=fields, sources=sources, confidence=round(confidence, 3))

    logger.debug("Parsed %s (confidence %.2f): %s", shape.name, result.confidence, sources)
    if result.synthesized:
        logger.info("Parse of %s synthesized fields: %s", shape.name, ", ".join(result.synthesized))
    return result


def render(fields: dict, shape: ExpectedShape) -> str:
    """Serialize parsed fields back into the exact marker format."""
    parts: list[str] = []
    for spec in shape.fields:
        if spec.name not in fields:
            continue
        value = fields[spec.name]
        if spec.kind == "score":
            parts.append(f"{spec.name}: {float(value):g}")
        elif spec.kind == "list":
            if value:
                items = "\n".join(f"- {item}" for item in value)
                parts.append(f"{spec.name}:\n{items}")
        elif spec.kind == "verdict":
            parts.append(f"{spec.name}: {value}")
        else:
            parts.append(f"{spec.name}:\n{value}")
    return "\n\n".join(parts)
