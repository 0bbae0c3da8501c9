"""Pure dataclasses for the battle engine. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum


class TaskCategory(str, Enum):
    REASONING = "reasoning"
    PLANNING = "planning"
    WRITING = "writing"
    CREATIVE = "creative"
    TECHNICAL = "technical"
    ANALYSIS = "analysis"


class BattleKind(str, Enum):
    SYSTEM_PROMPT = "system_prompt"   # candidates are system prompts
    USER_PROMPT = "user_prompt"       # candidates are refined user prompts
    ANSWER = "answer"                 # candidates answer the task directly


class BattleStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StopReason(str, Enum):
    CONSENSUS = "consensus"
    BUDGET = "budget"
    PLATEAU = "plateau"
    SINGLE_ROUND = "single_round"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class Constraints:
    max_latency_ms: float = 6000.0
    max_cost_per_1k: float = 0.5
    min_context_tokens: int = 8192


@dataclass(frozen=True)
class RequirementSpec:
    category: TaskCategory
    locale: str
    constraints: Constraints
    required_capabilities: frozenset[str]   # "web_search", "function_calling", "structured_output"
    output_format: str                      # "text", "markdown", "json", "table"


@dataclass
class ParticipantCapability:
    id: str
    context_tokens: int
    avg_latency_ms: float
    cost_per_1k_tokens: float
    tool_use: bool
    structured_output: bool
    skill: dict[str, float] = field(default_factory=dict)   # task category -> Elo-style rating
    freshness: float = 0.5
    diversity_key: str = ""


@dataclass
class ModelResponse:
    provider: str          # participant id that produced the text
    model: str             # actual model string used
    content: str
    latency_sec: float
    token_count: int | None
    cost: float = 0.0


@dataclass
class InvocationResult:
    participant_id: str    # participant the caller asked for
    served_by: str         # participant that actually produced the text
    text: str
    tokens_used: int
    cost: float
    latency_sec: float
    attempts: int
    fallback_used: str | None = None   # "alternate", "reduced_scope", "synthetic"
    synthetic: bool = False


@dataclass
class Revision:
    text: str
    rationale: str


@dataclass
class ProbeResult:
    probe_type: str
    question: str
    passed: bool
    notes: str = ""


@dataclass
class Candidate:
    participant_id: str
    text: str
    confidence: float
    rationale: str = ""
    revisions: list[Revision] = field(default_factory=list)
    probe_results: list[ProbeResult] = field(default_factory=list)
    parse_confidence: float = 1.0
    fallback: bool = False
    cost: float = 0.0


@dataclass
class Evaluation:
    evaluator_id: str
    target_id: str
    scores: dict[str, float]       # fixed sub-score names, each 1-10
    rationale: str
    suggestions: list[str] = field(default_factory=list)
    overall: float = 0.0           # weighted mean of scores
    parse_confidence: float = 1.0
    fallback: bool = False


@dataclass
class RoundResult:
    number: int
    candidates: list[Candidate] = field(default_factory=list)
    evaluations: list[Evaluation] = field(default_factory=list)
    scores: dict[str, float | None] = field(default_factory=dict)
    champion: str = ""
    champion_score: float | None = None
    consensus_achieved: bool = False
    consensus_strength: float = 0.0
    plateau_detected: bool = False
    spread: float = 0.0
    improvement: float | None = None   # champion score delta vs. preceding round
    cost: float = 0.0
    degraded: bool = False             # every candidate came from a fallback


@dataclass
class BattleRecord:
    id: str
    kind: BattleKind
    task: str
    requirements: RequirementSpec
    roster: list[str]
    rounds: list[RoundResult] = field(default_factory=list)
    winner: str | None = None
    final_text: str | None = None
    total_cost: float = 0.0
    converged: bool = False
    status: BattleStatus = BattleStatus.RUNNING
    stop_reason: StopReason | None = None
    error: str | None = None
    started_at: str = ""
    finished_at: str | None = None
    persisted: bool = False
    persistence_error: str | None = None
