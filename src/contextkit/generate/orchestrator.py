"""Model orchestrator: plan → expand → verify ⇄ repair → done | failed.

One run per generation request. Each state assembles its own bundle, makes at
most one model call per attempt, and writes a provenance record for every call
(including failed and cancelled ones). Verification runs and the terminal
done or failed transition are recorded too, under the pseudo-models
``sandbox`` and ``orchestrator``. Model errors retry once with backoff;
when planning or expansion still fails, the run degrades to a single pass over
a smaller bundle instead of failing outright. A terminal failure always carries
the last plan, the last output and every failure log.

Runs are single-flight per request id: a second caller with the same id waits
for the first run and receives the same result.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from contextkit.audit.provenance import ProvenanceLog
from contextkit.config import OrchestratorCfg
from contextkit.db.models import ContextBundle
from contextkit.errors import (
    CallCancelledError,
    GenerationError,
    PlanningError,
    VerificationFailed,
)
from contextkit.generate import templates
from contextkit.generate.plan import GenerationOutput, Plan, decode_output, decode_plan
from contextkit.generate.sandbox import Sandbox, TestReport, apply_unified_diff
from contextkit.generate.session import Session
from contextkit.rag import llm_client
from contextkit.rag.assembler import ContextAssembler
from contextkit.rag.calls import CancelToken

log = logging.getLogger("contextkit.orchestrator")

_PATH_RE = re.compile(r"[\w./-]+\.[A-Za-z0-9]+")
_REPAIR_QUERY_CHARS = 2_000

# model names on records of transitions that make no model call
SANDBOX_MODEL = "sandbox"
ORCHESTRATOR_MODEL = "orchestrator"


class State(str, Enum):
    PLANNING = "planning"
    EXPANDING = "expanding"
    VERIFYING = "verifying"
    REPAIRING = "repairing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class GenerationRequest:
    """Input of one orchestrated run.

    Attributes:
        workspace: Current file contents the output is applied to before
            verification, as ``{relative path: text}``.
    """

    project_id: str
    prompt: str
    session: Session
    max_context_tokens: int = 500_000
    hot_paths: tuple[str, ...] = ()
    workspace: Mapping[str, str] = field(default_factory=dict)
    request_id: str | None = None
    cancel: CancelToken | None = None
    now: datetime | None = None


@dataclass
class GenerationResult:
    request_id: str
    state: State
    plan: Plan | None = None
    output: GenerationOutput | None = None
    sources: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    failure_logs: list[str] = field(default_factory=list)
    repair_cycles: int = 0
    degraded: bool = False
    call_ids: list[str] = field(default_factory=list)
    transitions: list[State] = field(default_factory=list)

    def raise_for_failure(self) -> None:
        """Raise VerificationFailed when the run ended failed with test output."""
        if self.state is State.FAILED and self.failure_logs:
            raise VerificationFailed(self.failure_logs)


class ModelOrchestrator:
    """Drive the generation state machine.

    Args:
        assembler:  Context assembler for every bundle.
        provenance: Audit log receiving one record per model call, sandbox run
                    and terminal transition.
        model:      Primary generation model.
        sandbox:    Verification boundary. None skips verification with a warning.
        config:     Repair bound, planning bundle size, fallback fraction.
        fallback_model: Model for the degraded single pass; defaults to *model*.
        max_output_tokens / temperature / timeout: Per-call model settings.
        sleep:      Backoff sleeper, injectable for tests.
    """

    def __init__(
        self,
        assembler: ContextAssembler,
        provenance: ProvenanceLog,
        model: str,
        sandbox: Sandbox | None = None,
        config: OrchestratorCfg | None = None,
        fallback_model: str | None = None,
        max_output_tokens: int = 4_096,
        temperature: float = 0.0,
        timeout: float = 120.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.assembler = assembler
        self.provenance = provenance
        self.model = model
        self.sandbox = sandbox
        self.config = config or OrchestratorCfg()
        self.fallback_model = fallback_model or model
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._sleep = sleep
        self._inflight: dict[str, Future[GenerationResult]] = {}
        self._inflight_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, request: GenerationRequest) -> GenerationResult:
        """Run (or join) the generation for ``request.request_id``.

        Raises:
            CallCancelledError: The request's cancel token fired.
        """
        request_id = request.request_id or f"rq_{uuid.uuid4().hex}"
        with self._inflight_lock:
            existing = self._inflight.get(request_id)
            if existing is None:
                future: Future[GenerationResult] = Future()
                self._inflight[request_id] = future
        if existing is not None:
            log.info("request %s already running; joining it", request_id)
            return existing.result()

        try:
            result = self._execute(request, request_id)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._inflight_lock:
                self._inflight.pop(request_id, None)

    def plan(
        self, request: GenerationRequest, result: GenerationResult
    ) -> tuple[Plan, ContextBundle]:
        """Planning state: small bundle, structured plan, one stricter retry.

        Raises:
            PlanningError: Both replies failed to decode.
            GenerationError: The model call failed after its retry.
        """
        bundle = self.assembler.assemble(
            request.prompt,
            request.project_id,
            token_budget=min(request.max_context_tokens, self.config.plan_budget),
            hot_paths=request.hot_paths,
            now=request.now,
            top_k=self.config.plan_top_k,
            summary_levels=("project",),
            cancel=request.cancel,
        )
        result.warnings.extend(bundle.warnings)
        reply = self._call(
            State.PLANNING,
            templates.planning_messages(bundle, request.prompt),
            bundle,
            request,
            result,
        )
        try:
            return decode_plan(reply), bundle
        except PlanningError as first:
            log.info("plan rejected, retrying with stricter instruction: %s", first)
        reply = self._call(
            State.PLANNING,
            templates.planning_messages(bundle, request.prompt, strict=True),
            bundle,
            request,
            result,
        )
        return decode_plan(reply), bundle

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _execute(self, request: GenerationRequest, request_id: str) -> GenerationResult:
        result = GenerationResult(request_id=request_id, state=State.PLANNING)
        request.session.add_turn("user", request.prompt)

        try:
            self._enter(request, result, State.PLANNING)
            plan, _ = self.plan(request, result)
            result.plan = plan

            self._enter(request, result, State.EXPANDING)
            output, bundle = self._expand(request, plan, result)
        except CallCancelledError:
            raise
        except (PlanningError, GenerationError) as exc:
            result.warnings.append(f"{type(exc).__name__}: {exc}")
            log.warning("request %s degrading to single pass: %s", request_id, exc)
            return self._finish(request, self._single_pass(request, result))

        result.output = output
        self._set_sources(result, output, bundle)
        return self._finish(request, self._verify_loop(request, result))

    def _expand(
        self, request: GenerationRequest, plan: Plan | None, result: GenerationResult
    ) -> tuple[GenerationOutput, ContextBundle]:
        hot = request.hot_paths
        if plan is not None:
            hot = tuple(dict.fromkeys([*hot, *(s.path for s in plan.steps)]))
        bundle = self.assembler.assemble(
            request.prompt,
            request.project_id,
            token_budget=request.max_context_tokens,
            hot_paths=hot,
            session=request.session,
            now=request.now,
            cancel=request.cancel,
        )
        result.warnings.extend(bundle.warnings)
        reply = self._call(
            State.EXPANDING,
            templates.expansion_messages(bundle, request.prompt, plan),
            bundle,
            request,
            result,
        )
        return decode_output(reply), bundle

    def _single_pass(self, request: GenerationRequest, result: GenerationResult) -> GenerationResult:
        """Degraded mode: no plan, a quarter-size bundle, one verification, no repairs."""
        result.degraded = True
        self._enter(request, result, State.EXPANDING)
        budget = max(1, int(request.max_context_tokens * self.config.fallback_fraction))
        bundle = self.assembler.assemble(
            request.prompt,
            request.project_id,
            token_budget=budget,
            hot_paths=request.hot_paths,
            now=request.now,
            cancel=request.cancel,
        )
        result.warnings.extend(bundle.warnings)
        try:
            reply = self._call(
                State.EXPANDING,
                templates.expansion_messages(bundle, request.prompt, None),
                bundle,
                request,
                result,
                model=self.fallback_model,
                ok_status="fallback",
            )
            output = decode_output(reply)
        except GenerationError as exc:
            result.failure_logs.append(f"{type(exc).__name__}: {exc}")
            self._enter(request, result, State.FAILED)
            return result

        result.output = output
        self._set_sources(result, output, bundle)
        self._enter(request, result, State.VERIFYING)
        report = self._run_sandbox(request, output, result)
        if report.passed:
            self._enter(request, result, State.DONE)
        else:
            result.failure_logs.append(report.failure_log())
            self._enter(request, result, State.FAILED)
        return result

    def _verify_loop(self, request: GenerationRequest, result: GenerationResult) -> GenerationResult:
        while True:
            self._enter(request, result, State.VERIFYING)
            assert result.output is not None
            report = self._run_sandbox(request, result.output, result)
            if report.passed:
                self._enter(request, result, State.DONE)
                return result
            failure = report.failure_log()
            result.failure_logs.append(failure)
            if result.repair_cycles >= self.config.max_repair_cycles:
                self._enter(request, result, State.FAILED)
                return result

            self._enter(request, result, State.REPAIRING)
            result.repair_cycles += 1
            try:
                output, bundle = self._repair(request, result, failure)
            except CallCancelledError:
                raise
            except GenerationError as exc:
                result.warnings.append(f"repair {result.repair_cycles} failed: {exc}")
                self._enter(request, result, State.FAILED)
                return result
            result.output = output
            self._set_sources(result, output, bundle)

    def _repair(
        self, request: GenerationRequest, result: GenerationResult, failure: str
    ) -> tuple[GenerationOutput, ContextBundle]:
        """Targeted bundle: the failure text as query, implicated paths as hot paths."""
        assert result.output is not None
        implicated = [f.path for f in result.output.files] + [d.path for d in result.output.diffs]
        implicated += _PATH_RE.findall(failure)
        bundle = self.assembler.assemble(
            failure[-_REPAIR_QUERY_CHARS:],
            request.project_id,
            token_budget=request.max_context_tokens,
            hot_paths=tuple(dict.fromkeys(implicated)),
            now=request.now,
            top_k=self.config.repair_top_k,
            summary_levels=(),
            cancel=request.cancel,
        )
        result.warnings.extend(bundle.warnings)
        reply = self._call(
            State.REPAIRING,
            templates.repair_messages(
                bundle, request.prompt, result.output.model_dump_json(), failure
            ),
            bundle,
            request,
            result,
        )
        return decode_output(reply), bundle

    # ------------------------------------------------------------------
    # Boundaries
    # ------------------------------------------------------------------

    def _call(
        self,
        phase: State,
        messages: list[dict],
        bundle: ContextBundle,
        request: GenerationRequest,
        result: GenerationResult,
        model: str | None = None,
        ok_status: str = "ok",
    ) -> str:
        """One model call with a single backoff retry; every attempt is recorded.

        Raises:
            CallCancelledError: Cancelled; recorded with status ``cancelled``.
            GenerationError: Both attempts failed.
        """
        model = model or self.model
        used = bundle.ids
        attempt = 0
        while True:
            try:
                completion = llm_client.complete(
                    model,
                    messages,
                    max_tokens=self.max_output_tokens,
                    temperature=self.temperature,
                    num_retries=0,
                    timeout=self.timeout,
                    cancel=request.cancel,
                    response_format={"type": "json_object"},
                )
            except CallCancelledError as exc:
                self._record(result, request, model, phase, "cancelled", used, error=str(exc))
                raise
            except Exception as exc:
                self._record(result, request, model, phase, "error", used, error=str(exc))
                if attempt >= 1:
                    raise GenerationError(f"{phase.value} call to {model} failed: {exc}") from exc
                self._sleep(self.config.retry_backoff)
                attempt += 1
                continue
            self._record(
                result, request, model, phase, ok_status, used,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
            )
            return completion.text

    def _record(
        self,
        result: GenerationResult,
        request: GenerationRequest,
        model: str,
        phase: State,
        status: str,
        used: Iterable[str],
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        error: str | None = None,
    ) -> None:
        record = self.provenance.record_call(
            session_id=request.session.session_id,
            model=model,
            phase=phase.value,
            status=status,
            chunk_ids_used=used,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            error=error,
        )
        result.call_ids.append(record.call_id)

    def _run_sandbox(
        self, request: GenerationRequest, output: GenerationOutput, result: GenerationResult
    ) -> TestReport:
        """Verify *output* and record the outcome as a ``verifying`` record."""
        note = None
        if self.sandbox is None:
            note = "no sandbox configured; output was not verified"
            if note not in result.warnings:
                result.warnings.append(note)
            report = TestReport(passed=True)
        else:
            try:
                snapshot = build_snapshot(request.workspace, output)
            except ValueError as exc:
                report = TestReport(passed=False, output=f"Could not apply output: {exc}")
            else:
                report = self.sandbox.run_tests(snapshot)
        self._record(
            result,
            request,
            SANDBOX_MODEL,
            State.VERIFYING,
            "ok" if report.passed else "error",
            result.sources,
            error=note if report.passed else report.failure_log(),
        )
        return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, request: GenerationRequest, result: GenerationResult, state: State) -> None:
        result.state = state
        result.transitions.append(state)
        log.debug("request %s -> %s", result.request_id, state.value)
        if state is State.DONE:
            self._record(result, request, ORCHESTRATOR_MODEL, state, "ok", result.sources)
        elif state is State.FAILED:
            reason = (result.failure_logs or result.warnings or [None])[-1]
            self._record(
                result, request, ORCHESTRATOR_MODEL, state, "error", result.sources, error=reason
            )

    @staticmethod
    def _set_sources(
        result: GenerationResult, output: GenerationOutput, bundle: ContextBundle
    ) -> None:
        present = set(bundle.ids)
        cited = list(dict.fromkeys(output.sources))
        unknown = [s for s in cited if s not in present]
        if unknown:
            result.warnings.append(f"ignored {len(unknown)} cited source(s) not in the bundle")
        result.sources = [s for s in cited if s in present]

    @staticmethod
    def _finish(request: GenerationRequest, result: GenerationResult) -> GenerationResult:
        summary = result.plan.summary if result.plan else result.state.value
        request.session.add_turn("assistant", summary, set(result.sources))
        log.info(
            "request %s finished %s after %d repair cycle(s)",
            result.request_id, result.state.value, result.repair_cycles,
        )
        return result


def build_snapshot(workspace: Mapping[str, str], output: GenerationOutput) -> dict[str, str]:
    """Apply *output* on top of *workspace*.

    Raises:
        ValueError: A diff does not apply.
    """
    snapshot = dict(workspace)
    for f in output.files:
        snapshot[f.path] = f.content
    for d in output.diffs:
        snapshot[d.path] = apply_unified_diff(snapshot.get(d.path, ""), d.diff)
    return snapshot
