"""Plan and subtask generation with JSON recovery, validation and bounded retries."""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Mapping

from ..adapters.base import AdapterError
from ..agents.manager import AgentCompletion, AgentManagerError
from ..agents.registry import AgentRegistry
from ..config import ConductorSettings
from ..tasks.models import PlanningAnswer, PlanningData, PlanningQuestion, Subtask, TaskRecord
from ..tasks.store import TaskStore, require_task
from ..validation import (
    ValidationResult,
    describe_issues,
    extract_and_validate_json,
    generate_plan_feedback,
    generate_validation_feedback,
    infer_subtask_type,
    validate_plan_markdown,
    validate_questions,
    validate_subtasks,
)
from ..worktrees.cleanup import PLAN_ARTIFACTS, QUESTION_ARTIFACTS, remove_planning_artifacts
from .audit import AuditLog
from .development import SubtaskRunner
from .prompts import (
    build_parse_fix_prompt,
    build_plan_correction_prompt,
    build_plan_generation_prompt,
    build_plan_modification_prompt,
    build_planning_prompt,
    build_subtask_correction_prompt,
    build_subtask_generation_prompt,
)

logger = logging.getLogger(__name__)

Artifact = Literal["questions", "plan", "subtasks"]

QA_RATIO = 0.6
OUTPUT_MARKER = "[Output]\n"
LOST_AGENT_ERROR = "Planning agent was lost when the server restarted"


class GenerationError(RuntimeError):
    """Raised when a generation step cannot be started."""


@dataclass(slots=True)
class GenerationAttempt:
    """State of one retry chain for a single artifact."""

    task_id: str
    artifact: Artifact
    original_prompt: str
    attempts: int = 0
    parse_retries: int = 0
    format_attempts: int = 0
    last_output: str = ""
    last_data: Any = None
    last_error: str | None = None
    last_validation: ValidationResult | None = None
    thread_ids: list[str] = field(default_factory=list)
    hold_for_review: bool = False


class GenerationOrchestrator:
    """Drive a task from planning to approved subtasks.

    Each agent invocation is judged when it completes: its output is run
    through JSON recovery and the relevant validator, and failures are fed
    back to a fresh agent until the retry budget is spent, at which point the
    task is blocked with ``last_error`` set.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        store: TaskStore,
        settings: ConductorSettings,
        *,
        runner: SubtaskRunner | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._settings = settings
        self._runner = runner or SubtaskRunner(registry, store, settings)

    @property
    def runner(self) -> SubtaskRunner:
        return self._runner

    def planning_log(self, task_id: str) -> AuditLog:
        return AuditLog(self._settings.task_dir(task_id) / "planning-logs.txt")

    def _working_dir(self, task: TaskRecord) -> Path:
        return self._registry.resolve_working_dir(task)

    def _ensure_idle(self, task: TaskRecord) -> None:
        if task.assigned_agent:
            session = self._registry.get_agent_session_by_thread_id(task.assigned_agent)
            if session is not None and session.is_running:
                raise GenerationError(f"Task '{task.id}' already has an agent running ({task.assigned_agent})")

    # -- public operations -------------------------------------------------

    async def start_planning(self, task_id: str) -> dict[str, Any]:
        task = require_task(self._store, task_id)
        self._ensure_idle(task)

        audit = self.planning_log(task_id)
        audit.begin(
            f"Planning started for task: {task.title}",
            task_id,
            requires_human_review=task.requires_human_review,
        )

        artifact: Artifact = "questions" if task.requires_human_review else "plan"
        attempt = GenerationAttempt(task_id=task_id, artifact=artifact, original_prompt=build_planning_prompt(task))
        planning_status = "generating_questions" if artifact == "questions" else "generating_plan"
        thread_id = await self._launch(task, attempt, attempt.original_prompt, audit, planning_status=planning_status)
        return {"thread_id": thread_id, "planning_status": planning_status}

    async def submit_answers(
        self, task_id: str, answers: Mapping[str, PlanningAnswer | Mapping[str, Any]]
    ) -> dict[str, Any]:
        task = require_task(self._store, task_id)
        self._ensure_idle(task)
        if task.planning_data is None:
            raise GenerationError(f"Task '{task_id}' has no planning questions to answer")

        parsed = {
            key: value if isinstance(value, PlanningAnswer) else PlanningAnswer.model_validate(value)
            for key, value in answers.items()
        }
        for question in task.planning_data.questions:
            question.answer = parsed.get(question.id, PlanningAnswer())
        task.planning_data.answered_at = datetime.now(timezone.utc)
        task.planning_data.status = "completed"
        task.planning_status = "generating_plan"
        self._store.save(task)

        audit = self.planning_log(task_id)
        lines = ["[Answers Submitted]"]
        for question in task.planning_data.questions:
            lines.append(f"Q{question.order or '?'}: {question.question}")
            lines.append(f"A: {question.answer.selected_option if question.answer else ''}")
            if question.answer and question.answer.additional_text:
                lines.append(f"Additional: {question.answer.additional_text}")
        audit.banner("\n".join(lines))

        attempt = GenerationAttempt(
            task_id=task_id,
            artifact="plan",
            original_prompt=build_plan_generation_prompt(task, parsed),
        )
        audit.entry("Starting Plan Generation")
        thread_id = await self._launch(task, attempt, attempt.original_prompt, audit, planning_status="generating_plan")
        return {"thread_id": thread_id, "planning_status": "generating_plan"}

    async def approve_plan(self, task_id: str, *, start_development: bool = False) -> dict[str, Any]:
        task = require_task(self._store, task_id)
        if not task.plan_content:
            raise GenerationError(f"Task '{task_id}' has no plan to approve")

        task.plan_approved = True
        task.planning_status = "plan_approved"
        task.status = "pending"
        self._store.save(task)

        audit = self.planning_log(task_id)
        audit.banner(f"[Plan Approved]\nStart Development: {'Yes' if start_development else 'No'}")

        result: dict[str, Any] = {"task": task.summary(), "thread_id": None}
        if start_development:
            result["thread_id"] = await self.start_development(task_id)
            result["task"] = require_task(self._store, task_id).summary()
        return result

    async def start_development(self, task_id: str) -> str:
        task = require_task(self._store, task_id)
        if not task.plan_approved or not task.plan_content:
            raise GenerationError(f"Task '{task_id}' must have an approved plan before starting development")
        self._ensure_idle(task)

        audit = self.planning_log(task_id)
        audit.entry("Starting Development", "generating subtasks")
        attempt = GenerationAttempt(
            task_id=task_id,
            artifact="subtasks",
            original_prompt=build_subtask_generation_prompt(task),
        )
        return await self._launch(task, attempt, attempt.original_prompt, audit, phase="in_progress")

    async def modify_plan(
        self,
        task_id: str,
        *,
        new_plan: str | None = None,
        feedback: str | None = None,
    ) -> dict[str, Any]:
        """Replace the plan inline, or regenerate it from reviewer feedback.

        Either way the task ends at ``plan_ready`` and needs a fresh approval.
        """

        if (new_plan is None) == (feedback is None):
            raise GenerationError("Provide exactly one of new_plan or feedback")
        task = require_task(self._store, task_id)
        self._ensure_idle(task)
        audit = self.planning_log(task_id)

        if new_plan is not None:
            if not new_plan.strip():
                raise GenerationError("new_plan must not be empty")
            validation = validate_plan_markdown(new_plan)
            audit.banner("[Plan Modified - Inline Edit]")
            task.plan_content = new_plan
            task.plan_approved = False
            task.planning_status = "plan_ready"
            task.status = "pending"
            task.last_error = None
            self._store.save(task)
            return {"task": task.summary(), "thread_id": None, "validation": validation.to_dict()}

        if not task.plan_content:
            raise GenerationError(f"Task '{task_id}' has no plan to modify")
        if not feedback or not feedback.strip():
            raise GenerationError("feedback must not be empty")

        audit.banner(f"[Plan Modification Requested]\nFeedback: {feedback}")
        task.plan_approved = False
        self._store.save(task)
        attempt = GenerationAttempt(
            task_id=task_id,
            artifact="plan",
            original_prompt=build_plan_modification_prompt(task, feedback),
            hold_for_review=True,
        )
        thread_id = await self._launch(task, attempt, attempt.original_prompt, audit, planning_status="generating_plan")
        return {"task": require_task(self._store, task_id).summary(), "thread_id": thread_id, "validation": None}

    async def retry_plan_parse(self, task_id: str) -> dict[str, Any]:
        """Resume a task blocked during plan generation.

        The last logged agent output and any plan file in the working directory
        are tried first; failing both, plan generation is re-run from the saved
        answers (or the original planning prompt when no questions were asked).
        """

        task = require_task(self._store, task_id)
        if task.status != "blocked":
            raise GenerationError(f"Task '{task_id}' is not blocked; only blocked tasks can be resumed")
        if task.planning_status != "generating_plan":
            raise GenerationError(
                f"Task '{task_id}' has planning_status '{task.planning_status}'; "
                "retrying the parse only applies to tasks blocked during plan generation"
            )

        audit = self.planning_log(task_id)
        plan = self._plan_from_log(audit)
        if plan is None:
            _, data = self._find_artifact(task, "plan", audit)
            plan = data["plan"] if data is not None else None

        if plan is not None:
            task.plan_content = plan
            task.planning_status = "plan_ready"
            task.status = "pending"
            task.assigned_agent = None
            task.last_error = None
            self._store.save(task)
            remove_planning_artifacts(self._working_dir(task))
            audit.entry("Retry Parse", "Successfully extracted plan. Task resumed.")
            return {"task": task.summary(), "recovered": True, "thread_id": None}

        if task.planning_data is not None and task.planning_data.questions:
            answers = {
                question.id: question.answer or PlanningAnswer() for question in task.planning_data.questions
            }
            prompt = build_plan_generation_prompt(task, answers)
            audit.entry("Resume", "Re-invoking plan generation with saved answers.")
        else:
            prompt = build_planning_prompt(task.model_copy(update={"requires_human_review": False}))
            audit.entry("Resume", "Re-invoking plan generation.")

        task.last_error = None
        self._store.save(task)
        attempt = GenerationAttempt(task_id=task_id, artifact="plan", original_prompt=prompt)
        thread_id = await self._launch(task, attempt, prompt, audit, planning_status="generating_plan")
        return {"task": require_task(self._store, task_id).summary(), "recovered": False, "thread_id": thread_id}

    @staticmethod
    def _plan_from_log(audit: AuditLog) -> str | None:
        text = audit.read()
        marker = text.rfind(OUTPUT_MARKER)
        if marker == -1:
            return None
        recovery = extract_and_validate_json(text[marker + len(OUTPUT_MARKER):].strip())
        if not recovery.ok or not isinstance(recovery.data, dict):
            return None
        plan = recovery.data.get("plan")
        return plan if isinstance(plan, str) and plan.strip() else None

    def start_review(self, task_id: str) -> None:
        self._runner.start_review(task_id)

    def reconcile_on_startup(self) -> list[str]:
        """Block tasks whose planning agent belonged to a previous process."""

        blocked: list[str] = []
        for task in self._store.list():
            if task.status != "planning" or not task.assigned_agent:
                continue
            if self._registry.knows_thread(task.assigned_agent):
                continue
            self.planning_log(task.id).entry(
                "Startup Reconciliation", f"{LOST_AGENT_ERROR} (thread {task.assigned_agent}). Task blocked."
            )
            task.block(LOST_AGENT_ERROR)
            self._store.save(task)
            blocked.append(task.id)
        if blocked:
            logger.warning("Blocked tasks with lost planning agents", extra={"task_ids": blocked})
        return blocked

    # -- agent invocation --------------------------------------------------

    async def _launch(
        self,
        task: TaskRecord,
        attempt: GenerationAttempt,
        prompt: str,
        audit: AuditLog,
        *,
        planning_status: str | None = None,
        phase: str | None = None,
    ) -> str:
        attempt.attempts += 1

        async def on_complete(completion: AgentCompletion) -> None:
            await self._on_complete(attempt, completion)

        try:
            thread_id = await self._registry.start_agent_for_task(task, prompt, on_complete=on_complete)
        except (AdapterError, AgentManagerError) as exc:
            audit.entry("Failed To Start Agent", str(exc))
            self._block(attempt.task_id, str(exc), audit)
            raise

        attempt.thread_ids.append(thread_id)
        current = self._store.load(attempt.task_id) or task
        current.assigned_agent = thread_id
        current.generation_attempts = attempt.attempts
        current.status = "in_progress" if attempt.artifact == "subtasks" else "planning"
        if planning_status is not None:
            current.planning_status = planning_status  # type: ignore[assignment]
        if phase is not None:
            current.phase = phase  # type: ignore[assignment]
        self._store.save(current)
        audit.entry("Agent Started", f"{attempt.artifact} attempt {attempt.attempts}, thread ID: {thread_id}")
        return thread_id

    async def _relaunch(self, attempt: GenerationAttempt, prompt: str, audit: AuditLog, **state: Any) -> None:
        task = self._store.load(attempt.task_id)
        if task is None:
            return
        try:
            await self._launch(task, attempt, prompt, audit, **state)
        except (AdapterError, AgentManagerError):
            logger.warning("Retry agent could not be started", extra={"task_id": attempt.task_id})

    def _block(self, task_id: str, error: str, audit: AuditLog) -> None:
        task = self._store.load(task_id)
        if task is None:
            return
        task.block(error)
        self._store.save(task)
        audit.entry("Task Blocked", error)
        logger.info("Task blocked", extra={"task_id": task_id, "error": error})

    def _stream_record(self, attempt: GenerationAttempt, thread_id: str, kind: str, content: Any) -> None:
        stream_log = self._registry.stream_log
        if stream_log is not None and thread_id:
            stream_log.append(attempt.task_id, thread_id, kind, content)

    # -- completion handling -----------------------------------------------

    async def _on_complete(self, attempt: GenerationAttempt, completion: AgentCompletion) -> None:
        audit = self.planning_log(attempt.task_id)
        try:
            await self._handle_completion(attempt, completion, audit)
        except Exception as exc:
            logger.exception(
                "Failed to handle agent output",
                extra={"task_id": attempt.task_id, "thread_id": completion.thread_id},
            )
            audit.entry("Unexpected Error", f"{exc.__class__.__name__}: {exc}")
            self._block(attempt.task_id, f"Failed to process {attempt.artifact} output: {exc}", audit)

    async def _handle_completion(
        self, attempt: GenerationAttempt, completion: AgentCompletion, audit: AuditLog
    ) -> None:
        audit.entry("Agent Completed", f"Success: {completion.success} ({attempt.artifact}, thread {completion.thread_id})")

        if not completion.success:
            audit.entry("Error", completion.error or "unknown error")
            self._block(attempt.task_id, completion.error or "Agent failed", audit)
            return

        audit.append(f"{OUTPUT_MARKER}{completion.output}")
        attempt.last_output = completion.output

        kind, data, error = self._recover(attempt.artifact, completion.output)
        if error is not None:
            audit.entry("Parse Error", error)
            self._stream_record(attempt, completion.thread_id, "validation", {"valid": False, "parse_error": error})
            kind, data = self._artifact_fallback(attempt, audit)
            if data is None:
                await self._retry_parse(attempt, error, completion, audit)
                return
        else:
            audit.entry("Parsed JSON successfully")

        attempt.last_data = data
        attempt.last_error = None
        if kind == "questions":
            validation = validate_questions(data)
            if not validation.valid:
                self._stream_record(attempt, completion.thread_id, "validation", validation.to_dict())
                await self._retry_parse(attempt, f"Invalid questions: {describe_issues(validation)}", completion, audit)
                return
            self._accept_questions(attempt, data["questions"], audit)
        elif kind == "subtasks":
            await self._accept_subtasks(attempt, data, completion, audit)
        else:
            await self._accept_plan(attempt, data["plan"], completion, audit)

    @staticmethod
    def _recover(artifact: Artifact, output: str) -> tuple[Artifact | None, dict[str, Any] | None, str | None]:
        """Return the artifact kind the recovered JSON actually carries, its data, or an error."""

        recovery = extract_and_validate_json(output)
        if not recovery.ok:
            return None, None, recovery.error
        data = recovery.data
        if not isinstance(data, dict):
            return None, None, f"Expected a JSON object but found {type(data).__name__}"
        if artifact == "subtasks":
            if "subtasks" in data:
                return "subtasks", data, None
            return None, None, 'Parsed JSON has no "subtasks" field'
        if artifact == "questions" and isinstance(data.get("questions"), list):
            return "questions", data, None
        if isinstance(data.get("plan"), str) and data["plan"].strip():
            return "plan", data, None
        return None, None, f'Parsed JSON has no "{"questions" if artifact == "questions" else "plan"}" field'

    def _artifact_fallback(
        self, attempt: GenerationAttempt, audit: AuditLog
    ) -> tuple[Artifact | None, dict[str, Any] | None]:
        if attempt.artifact == "subtasks":
            return None, None
        task = self._store.load(attempt.task_id)
        if task is None:
            return None, None
        return self._find_artifact(task, attempt.artifact, audit)

    def _find_artifact(
        self, task: TaskRecord, artifact: Artifact, audit: AuditLog
    ) -> tuple[Artifact | None, dict[str, Any] | None]:
        """Look for questions or a plan the agent wrote to disk instead of printing."""

        names = QUESTION_ARTIFACTS + PLAN_ARTIFACTS if artifact == "questions" else PLAN_ARTIFACTS
        root = self._working_dir(task)
        for name in names:
            path = root / name
            try:
                parsed = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                continue
            if not isinstance(parsed, dict):
                continue
            if isinstance(parsed.get("questions"), list) and name in QUESTION_ARTIFACTS:
                audit.entry("Fallback", f"Found questions in {name}, using it.")
                return "questions", {"questions": parsed["questions"]}
            if isinstance(parsed.get("plan"), str) and parsed["plan"].strip():
                audit.entry("Fallback", f"Found plan in {name}, using it.")
                return "plan", {"plan": parsed["plan"]}
        return None, None

    async def _retry_parse(
        self, attempt: GenerationAttempt, error: str, completion: AgentCompletion, audit: AuditLog
    ) -> None:
        attempt.last_error = error
        if attempt.parse_retries >= self._settings.max_parse_retries:
            audit.entry("Max Parse Retries Reached", "Task blocked.")
            self._block(attempt.task_id, f"Could not parse {attempt.artifact} output: {error}", audit)
            return

        attempt.parse_retries += 1
        audit.entry(
            "Parse Retry",
            f"Attempt {attempt.parse_retries}/{self._settings.max_parse_retries} - starting fix agent",
        )
        prompt = build_parse_fix_prompt(attempt.artifact, error, completion.output)
        self._stream_record(attempt, completion.thread_id, "feedback", prompt)
        await self._relaunch(attempt, prompt, audit, **self._retry_state(attempt))

    @staticmethod
    def _retry_state(attempt: GenerationAttempt) -> dict[str, Any]:
        if attempt.artifact == "subtasks":
            return {}
        if attempt.artifact == "questions":
            return {"planning_status": "generating_questions"}
        return {"planning_status": "generating_plan"}

    def _accept_questions(self, attempt: GenerationAttempt, raw: list[Any], audit: AuditLog) -> None:
        task = self._store.load(attempt.task_id)
        if task is None:
            return
        questions = [
            PlanningQuestion(
                id=item["id"],
                question=item["question"],
                options=item.get("options") or [],
                required=item.get("required", True),
                order=index,
            )
            for index, item in enumerate(raw, start=1)
        ]
        task.planning_data = PlanningData(questions=questions)
        task.planning_status = "waiting_for_answers"
        task.status = "pending"
        task.assigned_agent = None
        self._store.save(task)
        remove_planning_artifacts(self._working_dir(task))
        audit.entry("Questions Generated", f"{len(questions)} questions")

    async def _accept_plan(
        self, attempt: GenerationAttempt, plan: str, completion: AgentCompletion, audit: AuditLog
    ) -> None:
        task = self._store.load(attempt.task_id)
        if task is None:
            return

        validation = validate_plan_markdown(plan)
        attempt.last_validation = validation
        self._stream_record(attempt, completion.thread_id, "validation", validation.to_dict())
        audit.entry(
            "Plan Validation",
            f"valid={validation.valid} errors={len(validation.errors)} warnings={len(validation.warnings)}",
        )
        for issue in validation.errors:
            audit.append(f"- {issue.field}: {issue.issue}")

        task.plan_content = plan
        if not validation.valid and not task.requires_human_review:
            attempt.format_attempts += 1
            if attempt.format_attempts < self._settings.max_plan_format_attempts:
                feedback = generate_plan_feedback(validation)
                self._stream_record(attempt, completion.thread_id, "feedback", feedback)
                self._store.save(task)
                audit.entry(
                    "Plan Validation Failed",
                    f"Attempt {attempt.format_attempts}/{self._settings.max_plan_format_attempts - 1}. "
                    "Re-generating with feedback.",
                )
                await self._relaunch(
                    attempt,
                    build_plan_correction_prompt(task, plan, feedback),
                    audit,
                    planning_status="generating_plan",
                )
                return

            task.planning_status = "plan_ready"
            self._store.save(task)
            self._block(
                attempt.task_id,
                f"Plan failed validation after {attempt.format_attempts} attempts",
                audit,
            )
            return

        task.planning_status = "plan_ready"
        task.status = "pending"
        task.assigned_agent = None
        remove_planning_artifacts(self._working_dir(task))

        if task.requires_human_review or attempt.hold_for_review or not validation.valid:
            self._store.save(task)
            audit.entry("Plan Generated", "waiting for human review")
            return

        task.plan_approved = True
        task.planning_status = "plan_approved"
        self._store.save(task)
        audit.entry("Auto-approving plan", "no human review required")
        try:
            await self.start_development(attempt.task_id)
        except (GenerationError, AdapterError, AgentManagerError) as exc:
            audit.entry("Error Starting Development", str(exc))
            self._block(attempt.task_id, f"Failed to start development: {exc}", audit)

    async def _accept_subtasks(
        self, attempt: GenerationAttempt, data: dict[str, Any], completion: AgentCompletion, audit: AuditLog
    ) -> None:
        validation = validate_subtasks(data)
        attempt.last_validation = validation
        self._stream_record(attempt, completion.thread_id, "validation", validation.to_dict())

        if not validation.valid:
            feedback = generate_validation_feedback(validation)
            self._stream_record(attempt, completion.thread_id, "feedback", feedback)
            attempt.format_attempts += 1
            audit.entry("Subtask Validation Failed", f"{len(validation.errors)} errors")
            if attempt.format_attempts < self._settings.max_plan_format_attempts:
                task = self._store.load(attempt.task_id)
                if task is None:
                    return
                await self._relaunch(attempt, build_subtask_correction_prompt(task, feedback, completion.output), audit)
                return
            self._block(
                attempt.task_id,
                f"Subtasks failed validation after {attempt.format_attempts} attempts",
                audit,
            )
            return

        task = self._store.load(attempt.task_id)
        if task is None:
            return

        subtasks = [
            Subtask(
                id=item["id"],
                content=item["content"],
                label=item["label"],
                active_form=item.get("activeForm") or f"Working on {item['label']}",
                type=infer_subtask_type(item),
            )
            for item in data["subtasks"]
        ]
        dev = [subtask for subtask in subtasks if subtask.type == "dev"]
        qa = [subtask for subtask in subtasks if subtask.type == "qa"]
        if not qa:
            qa = [
                Subtask(
                    id=f"subtask-qa-{index}",
                    content=f"[AUTO] Verify implementation step {index} - Validate the corresponding development work",
                    label=f"Verify Step {index}",
                    active_form=f"Verifying Step {index}",
                    type="qa",
                )
                for index in range(1, math.floor(len(dev) * QA_RATIO) + 1)
            ]

        task.subtasks = dev + qa
        task.phase = "in_progress"
        task.status = "in_progress"
        task.assigned_agent = None
        self._store.save(task)
        audit.entry("Subtasks Saved", f"{len(dev)} dev, {len(qa)} qa")
        self._runner.start(attempt.task_id)


__all__ = ["GenerationAttempt", "GenerationError", "GenerationOrchestrator"]
