"""Usage and cost rollups derived from completed tasks.

Read-only: everything is recomputed from the tasks table on each call. Task
volume is team-scale, so there is no caching layer.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskboard.models import ModelInfo, Task, as_utc, to_iso
from taskboard.storage.base import TaskStore

RECENT_TASK_LIMIT = 20
UNKNOWN_KEY = "unknown"

AVAILABLE_MODELS = (
    ModelInfo(id="claude-opus-4.5", name="Claude Opus 4.5", cost_per_1k_input=0.015, cost_per_1k_output=0.075),
    ModelInfo(id="claude-sonnet-4", name="Claude Sonnet 4", cost_per_1k_input=0.003, cost_per_1k_output=0.015),
    ModelInfo(id="claude-haiku-4.5", name="Claude Haiku 4.5", cost_per_1k_input=0.0008, cost_per_1k_output=0.004),
    ModelInfo(id="gpt-4o", name="GPT-4o", cost_per_1k_input=0.005, cost_per_1k_output=0.015),
    ModelInfo(id="gpt-4o-mini", name="GPT-4o Mini", cost_per_1k_input=0.00015, cost_per_1k_output=0.0006),
)


def available_models() -> list[ModelInfo]:
    return [model.model_copy() for model in AVAILABLE_MODELS]


class UsageStatsQuery(BaseModel):
    agent_id: str | None = None
    from_: datetime | None = Field(default=None, alias="from")
    to: datetime | None = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("from_", "to")
    @classmethod
    def _window_as_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class UsageBucket(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    task_count: int = 0

    def add(self, task: Task) -> None:
        self.input_tokens += task.usage_input_tokens or 0
        self.output_tokens += task.usage_output_tokens or 0
        self.cost_usd += task.usage_cost_usd or 0.0
        self.task_count += 1


class AgentUsage(UsageBucket):
    agent: str


class ModelUsage(UsageBucket):
    model: str


class DayUsage(UsageBucket):
    day: str


class UsageTotals(BaseModel):
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    task_count: int = 0
    agent_count: int = 0


class RecentUsageTask(BaseModel):
    id: str
    title: str
    agent: str | None
    model: str | None
    input_tokens: int | None
    output_tokens: int | None
    total_tokens: int
    cost_usd: float | None
    completed_at: datetime


class UsageStats(BaseModel):
    totals: UsageTotals
    by_agent: list[AgentUsage]
    by_model: list[ModelUsage]
    by_day: list[DayUsage]
    recent_tasks: list[RecentUsageTask]


def get_usage_stats(store: TaskStore, query: UsageStatsQuery | None = None) -> UsageStats:
    """Totals plus per-agent/model/day breakdowns over tasks that reported usage."""
    query = query or UsageStatsQuery()
    tasks = store.list_with_usage(
        agent_id=query.agent_id,
        updated_from=query.from_,
        updated_to=query.to,
    )

    totals = UsageTotals(task_count=len(tasks))
    by_agent: dict[str, AgentUsage] = {}
    by_model: dict[str, ModelUsage] = {}
    by_day: dict[str, DayUsage] = {}

    for task in tasks:
        input_tokens = task.usage_input_tokens or 0
        output_tokens = task.usage_output_tokens or 0
        totals.total_input_tokens += input_tokens
        totals.total_output_tokens += output_tokens
        totals.total_tokens += input_tokens + output_tokens
        totals.total_cost_usd += task.usage_cost_usd or 0.0

        agent = task.claimed_by or UNKNOWN_KEY
        model = task.usage_model or UNKNOWN_KEY
        # Day key is the date portion of the ISO updated_at timestamp.
        day = to_iso(task.updated_at)[:10]
        by_agent.setdefault(agent, AgentUsage(agent=agent)).add(task)
        by_model.setdefault(model, ModelUsage(model=model)).add(task)
        by_day.setdefault(day, DayUsage(day=day)).add(task)

    totals.agent_count = len({task.claimed_by for task in tasks if task.claimed_by})

    recent = sorted(tasks, key=lambda task: task.updated_at, reverse=True)[:RECENT_TASK_LIMIT]
    return UsageStats(
        totals=totals,
        by_agent=list(by_agent.values()),
        by_model=list(by_model.values()),
        by_day=[by_day[day] for day in sorted(by_day)],
        recent_tasks=[
            RecentUsageTask(
                id=task.id,
                title=task.title,
                agent=task.claimed_by,
                model=task.usage_model,
                input_tokens=task.usage_input_tokens,
                output_tokens=task.usage_output_tokens,
                total_tokens=(task.usage_input_tokens or 0) + (task.usage_output_tokens or 0),
                cost_usd=task.usage_cost_usd,
                completed_at=task.updated_at,
            )
            for task in recent
        ],
    )


class DailyUsage(BaseModel):
    tokens_in: int = 0
    tokens_out: int = 0
    tokens_total: int = 0
    cost_usd: float = 0.0
    task_count: float = 0


class AgentUsageSummary(BaseModel):
    agent_id: str
    today: DailyUsage
    yesterday: DailyUsage
    week_total: DailyUsage
    week_avg: DailyUsage
    trend_vs_yesterday: str
    trend_vs_week_avg: str


def calc_trend(current: float, baseline: float) -> str:
    """Signed percentage change of `current` against `baseline`, e.g. "+25%" or "-50%"."""
    if baseline == 0:
        return "+∞%" if current > 0 else "0%"
    pct = (current - baseline) / baseline * 100
    sign = "+" if pct >= 0 else ""
    return f"{sign}{_round_half_up(pct, 0):.0f}%"


def _round_half_up(value: float, digits: int) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _aggregate(tasks: Iterable[Task]) -> DailyUsage:
    usage = DailyUsage()
    for task in tasks:
        tokens_in = task.usage_input_tokens or 0
        tokens_out = task.usage_output_tokens or 0
        usage.tokens_in += tokens_in
        usage.tokens_out += tokens_out
        usage.tokens_total += tokens_in + tokens_out
        usage.cost_usd += task.usage_cost_usd or 0.0
        usage.task_count += 1
    return usage


def get_agent_usage_summary(
    store: TaskStore,
    agent_id: str,
    *,
    now: datetime | None = None,
) -> AgentUsageSummary:
    """Today / yesterday / 7-day usage for one agent over its completed tasks.

    Days are UTC calendar days. The week covers today and the six days before it.
    """
    current = (now or datetime.now(tz=UTC)).astimezone(UTC)
    today_start = datetime.combine(current.date(), time.min, tzinfo=UTC)
    day_end = timedelta(days=1) - timedelta(milliseconds=1)
    yesterday_start = today_start - timedelta(days=1)
    week_start = today_start - timedelta(days=6)

    def done_tasks(start: datetime, end: datetime | None) -> list[Task]:
        return store.list_with_usage(
            agent_id=agent_id,
            status="done",
            updated_from=start,
            updated_to=end,
        )

    today = _aggregate(done_tasks(today_start, today_start + day_end))
    yesterday = _aggregate(done_tasks(yesterday_start, yesterday_start + day_end))
    week = _aggregate(done_tasks(week_start, None))
    week_avg = DailyUsage(
        tokens_in=int(_round_half_up(week.tokens_in / 7, 0)),
        tokens_out=int(_round_half_up(week.tokens_out / 7, 0)),
        tokens_total=int(_round_half_up(week.tokens_total / 7, 0)),
        cost_usd=_round_half_up(week.cost_usd / 7, 2),
        task_count=_round_half_up(week.task_count / 7, 1),
    )

    return AgentUsageSummary(
        agent_id=agent_id,
        today=today,
        yesterday=yesterday,
        week_total=week,
        week_avg=week_avg,
        trend_vs_yesterday=calc_trend(today.cost_usd, yesterday.cost_usd),
        trend_vs_week_avg=calc_trend(today.cost_usd, week_avg.cost_usd),
    )
