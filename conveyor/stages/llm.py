"""
Content Conveyor — LLM-backed stage helper
All paid stages call the LiteLLM proxy through here. Each call is keyed in the
idempotency ledger by (item, stage, model, prompt), so a retry with unchanged
inputs replays the stored response at $0 instead of paying again. Fresh
calls are charged to the Budget Guard as soon as they return, so spend on a
stage that later fails still counts against the month.
"""

from __future__ import annotations
import json
from typing import Any, Optional

from conveyor.budget import guard
from conveyor.config import get_stage_cost_estimate, get_stage_timeout
from conveyor.errors import StageError, StageTimeoutError
from conveyor.framework.base_stage import BaseStage, Failure, StageContext, StageResult, Success
from conveyor.ledger import idempotency
from orchestrator.cost_logger import LLMCall, estimate_cost, log_call
from orchestrator.router import TaskType, get_litellm_api_key, get_litellm_base_url, route

META_KEY = "_meta"


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        text = "\n".join(lines[1:-1] if lines[-1].strip() == "```" else lines[1:])
    return text


def call_stage_llm(prompt: str, task_type: TaskType, timeout: Optional[float] = None) -> dict:
    """Call the routed model via LiteLLM proxy. Returns parsed JSON plus a _meta usage block."""
    import litellm

    decision = route(task_type)
    try:
        response = litellm.completion(
            model=decision.primary_model,
            api_base=get_litellm_base_url(),
            api_key=get_litellm_api_key(),
            messages=[{"role": "user", "content": prompt}],
            temperature=0.4,
            max_tokens=decision.max_tokens,
            timeout=timeout,
        )
    except litellm.Timeout as e:
        raise StageTimeoutError(f"{task_type.value} LLM call timed out: {e}") from e
    except Exception as e:
        raise StageError(f"{task_type.value} LLM call failed: {e}") from e

    text = _strip_fences(response.choices[0].message.content or "")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        raise StageError(f"{task_type.value} LLM returned invalid JSON: {text[:200]}")
    if not isinstance(data, dict):
        raise StageError(f"{task_type.value} LLM returned {type(data).__name__}, expected object")

    usage = getattr(response, "usage", None)
    data[META_KEY] = {
        "model": decision.primary_model,
        "input_tokens": getattr(usage, "prompt_tokens", 0) or 0,
        "output_tokens": getattr(usage, "completion_tokens", 0) or 0,
    }
    return data


class LLMStage(BaseStage):
    """
    Base for stages that make one or more paid calls.
    Subclasses build the prompt and validate the parsed response; call_llm()
    handles routing, idempotency, cost accounting and the cost log.
    """

    task_type: TaskType

    def __init__(self, config: dict | None = None):
        super().__init__(config)
        self._cost = 0.0
        self._calls = 0
        self._cached = 0

    def call_llm(self, ctx: StageContext, prompt: str, task_type: Optional[TaskType] = None) -> dict:
        task_type = task_type or self.task_type
        model = route(task_type).primary_model
        key = idempotency.derive_key(
            ctx.item.id,
            self.number,
            {"task": task_type.value, "model": model, "prompt": prompt},
        )
        fresh: list[bool] = []

        def compute() -> dict:
            fresh.append(True)
            if ctx.llm_caller is not None:
                return ctx.llm_caller(prompt, task_type)
            return call_stage_llm(prompt, task_type, timeout=get_stage_timeout(self.key))

        data = dict(idempotency.get_or_create(
            key, compute,
            item_id=ctx.item.id, stage=self.number, stale_after=get_stage_timeout(self.key),
        ))
        meta = data.pop(META_KEY, None) or {}

        if meta.get("input_tokens") or meta.get("output_tokens"):
            cost = estimate_cost(meta.get("model", model), meta["input_tokens"], meta["output_tokens"])
        else:
            cost = get_stage_cost_estimate(self.key)

        cached = not fresh
        log_call(LLMCall(
            user_id=ctx.item.user_id,
            item_id=ctx.item.id,
            stage=self.key,
            model=meta.get("model", model),
            tokens_in=meta.get("input_tokens", 0),
            tokens_out=meta.get("output_tokens", 0),
            cost=0.0 if cached else cost,
            purpose=task_type.value,
            cached=cached,
        ))
        self._calls += 1
        if cached:
            self._cached += 1
        else:
            self._cost += cost
            guard.record_spend(
                ctx.item.user_id, cost, monthly_limit=ctx.settings.monthly_budget_limit
            )
        return data

    def run(self, ctx: StageContext) -> StageResult:
        self._cost, self._calls, self._cached = 0.0, 0, 0
        result = self.execute(ctx)
        if isinstance(result, Failure):
            result.cost_usd = round(self._cost, 6)
            return result
        return Success(
            output=result,
            cost_usd=round(self._cost, 6),
            llm_calls=self._calls,
            cached_calls=self._cached,
        )

    def execute(self, ctx: StageContext) -> Any:
        """Return the stage output, or a Failure. Implement in subclass."""
        raise NotImplementedError


def clamp_int(value: Any, low: int, high: int, default: int) -> int:
    try:
        n = int(round(float(value)))
    except (TypeError, ValueError):
        return default
    return max(low, min(high, n))


def str_list(value: Any, limit: int = 10) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()][:limit]
