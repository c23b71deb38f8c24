from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from conductor_mcp.adapters import AdapterNotReadyError, SimulatorAdapter
from conductor_mcp.adapters.preflight import PreflightResult
from conductor_mcp.adapters.simulator import SIMULATED_PLAN
from conductor_mcp.agents import AgentRegistry, StreamLog
from conductor_mcp.config import ConductorSettings
from conductor_mcp.orchestrator import GenerationError, GenerationOrchestrator
from conductor_mcp.orchestrator.generation import OUTPUT_MARKER
from conductor_mcp.tasks import InMemoryTaskStore, PlanningAnswer, PlanningData, PlanningQuestion, TaskRecord

VALID_PLAN = json.dumps({"plan": SIMULATED_PLAN})
THIN_PLAN = json.dumps({"plan": "# Plan\n\n## Overview\nToo short to be useful."})


def _setup(tmp_path: Path, simulator: SimulatorAdapter, *, ready: bool = True):
    settings = ConductorSettings(
        project_dir=tmp_path,
        memory_paths=(tmp_path / "memory",),
        simulator_delay_scale=0,
    )

    async def preflight(provider):
        return PreflightResult(
            provider=provider.value,
            ready=ready,
            cli_path=None,
            auth_source="cli_login" if ready else "missing",
            instructions=[] if ready else ["Install the CLI"],
        )

    registry = AgentRegistry(
        settings,
        adapter_factory=lambda provider, s: simulator,
        preflight=preflight,
        stream_log=StreamLog(settings.state_dir),
    )
    store = InMemoryTaskStore()
    orchestrator = GenerationOrchestrator(registry, store, settings)
    return settings, registry, store, orchestrator


async def _settle(registry: AgentRegistry, orchestrator: GenerationOrchestrator, task_id: str) -> None:
    # completion callbacks can launch further agents, so loop until nothing new appears
    for _ in range(100):
        sessions = registry.get_agents_for_task(task_id)
        for session in sessions:
            await registry.wait_for_thread(session.thread_id)
        await orchestrator.runner.join()
        await asyncio.sleep(0)
        current = registry.get_agents_for_task(task_id)
        if len(current) == len(sessions) and not any(session.is_running for session in current):
            return
    raise AssertionError("agents did not settle")


def test_autonomous_task_runs_to_human_review(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add login rate limiting"))

    async def scenario():
        started = await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")
        return started

    started = asyncio.run(scenario())
    task = store.load("task-1")

    assert started["planning_status"] == "generating_plan"
    assert task.plan_approved is True
    assert task.planning_status == "plan_approved"
    assert task.plan_content == SIMULATED_PLAN
    assert [subtask.id for subtask in task.subtasks] == ["subtask-1", "subtask-2", "subtask-qa-1"]
    assert all(subtask.status == "completed" for subtask in task.subtasks)
    assert task.phase == "human_review"
    assert task.status == "completed"
    assert task.assigned_agent is None

    planning_log = orchestrator.planning_log("task-1").read()
    assert "Planning started for task: Add login rate limiting" in planning_log
    assert "[Auto-approving plan]" in planning_log
    assert "[Subtasks Saved] 2 dev, 1 qa" in planning_log
    assert "[ALL DEV SUBTASKS COMPLETED" in orchestrator.runner.development_log("task-1").read()
    assert "[ALL QA SUBTASKS COMPLETED" in orchestrator.runner.review_log("task-1").read()
    assert "# SUBTASK GENERATION" in simulator.prompts[1]


def test_human_review_waits_for_answers_and_approval(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Refactor errors", requires_human_review=True))

    async def planning():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(planning())
    task = store.load("task-1")

    assert task.planning_status == "waiting_for_answers"
    assert task.status == "pending"
    assert [question.id for question in task.planning_data.questions] == ["q1", "q2"]

    async def answers():
        await orchestrator.submit_answers("task-1", {"q1": {"selectedOption": "Correctness", "additionalText": "Keep the API"}})
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(answers())
    task = store.load("task-1")

    assert task.planning_status == "plan_ready"
    assert task.plan_approved is False
    assert task.planning_data.status == "completed"
    assert task.planning_data.questions[0].answer.selected_option == "Correctness"
    assert task.planning_data.questions[1].answer.selected_option == ""
    assert "Keep the API" in simulator.prompts[-1]
    assert task.subtasks == []

    async def approval():
        result = await orchestrator.approve_plan("task-1", start_development=True)
        await _settle(registry, orchestrator, "task-1")
        return result

    result = asyncio.run(approval())
    task = store.load("task-1")

    assert result["thread_id"] is not None
    assert task.phase == "human_review"
    assert task.status == "completed"


def test_unparseable_output_is_repaired_by_a_fix_agent(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0, responses=["Sorry, I could not finish the plan.", VALID_PLAN])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def scenario():
        first = await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")
        return first["thread_id"]

    first_thread = asyncio.run(scenario())
    task = store.load("task-1")

    assert simulator.prompts[1].startswith("# PLANNING PHASE: Plan Output Repair")
    assert "Parse error:" in simulator.prompts[1]
    assert "---\nSorry, I could not finish the plan.\n---" in simulator.prompts[1]
    assert task.plan_content == SIMULATED_PLAN
    assert task.status == "completed"
    assert "[Parse Retry] Attempt 1/2" in orchestrator.planning_log("task-1").read()

    kinds = [entry["type"] for entry in registry.stream_log.read(first_thread)]
    assert "validation" in kinds
    assert "feedback" in kinds


def test_parse_retries_are_bounded(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0, responses=["no json here"] * 3)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert len(simulator.prompts) == 3
    assert task.status == "blocked"
    assert task.assigned_agent is None
    assert task.last_error.startswith("Could not parse plan output")
    assert task.generation_attempts == 3
    assert "[Max Parse Retries Reached]" in orchestrator.planning_log("task-1").read()


def test_invalid_plan_is_corrected_then_blocked(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0, responses=[THIN_PLAN] * 3)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert len(simulator.prompts) == 3
    assert simulator.prompts[1].startswith("# PLAN GENERATION: Correction")
    assert "Too short to be useful." in simulator.prompts[1]
    assert task.status == "blocked"
    assert task.last_error == "Plan failed validation after 3 attempts"
    assert task.plan_content is not None
    assert task.plan_approved is False


def test_invalid_plan_recovers_on_correction(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0, responses=[THIN_PLAN, VALID_PLAN])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert task.plan_content == SIMULATED_PLAN
    assert task.phase == "human_review"
    assert "[Plan Validation Failed] Attempt 1/2" in orchestrator.planning_log("task-1").read()


def test_plan_file_fallback(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0, responses=["I wrote the plan to implementation-plan.json."])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching", requires_human_review=False))
    plan_file = tmp_path / "implementation-plan.json"
    plan_file.write_text(VALID_PLAN, encoding="utf-8")

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert task.plan_content == SIMULATED_PLAN
    assert not plan_file.exists()
    assert "[Fallback] Found plan in implementation-plan.json" in orchestrator.planning_log("task-1").read()


def test_missing_qa_subtasks_are_added(tmp_path: Path) -> None:
    subtasks = {
        "subtasks": [
            {"id": f"subtask-{index}", "content": f"Implement part {index} in src/app/part{index}.py", "label": f"Part {index}"}
            for index in range(1, 6)
        ]
    }
    simulator = SimulatorAdapter(delay_scale=0, responses=[VALID_PLAN, json.dumps(subtasks)])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Split module"))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    qa = [subtask for subtask in task.subtasks if subtask.type == "qa"]
    assert [subtask.id for subtask in qa] == ["subtask-qa-1", "subtask-qa-2", "subtask-qa-3"]
    assert qa[0].content.startswith("[AUTO] Verify implementation step 1")
    assert task.subtasks[0].active_form == "Working on Part 1"
    assert task.phase == "human_review"


def test_provider_not_ready_blocks_task(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator, ready=False)
    store.save(TaskRecord(id="task-1", title="Add caching", cli_tool="cursor"))

    with pytest.raises(AdapterNotReadyError):
        asyncio.run(orchestrator.start_planning("task-1"))

    task = store.load("task-1")
    assert task.status == "blocked"
    assert "not ready" in task.last_error
    assert "[Failed To Start Agent]" in orchestrator.planning_log("task-1").read()


def test_second_planning_run_is_rejected_while_agent_runs(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=10)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def scenario():
        await orchestrator.start_planning("task-1")
        try:
            with pytest.raises(GenerationError):
                await orchestrator.start_planning("task-1")
        finally:
            await registry.shutdown()

    asyncio.run(scenario())


def test_preconditions(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.approve_plan("task-1"))
    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.start_development("task-1"))
    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.submit_answers("task-1", {}))


def test_reconcile_blocks_lost_planning_agents(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Lost", status="planning", assigned_agent="simulator-old"))
    store.save(TaskRecord(id="task-2", title="Idle"))

    blocked = orchestrator.reconcile_on_startup()

    assert blocked == ["task-1"]
    task = store.load("task-1")
    assert task.status == "blocked"
    assert task.assigned_agent is None
    assert "lost" in task.last_error
    assert store.load("task-2").status == "pending"


def test_malformed_questions_are_repaired(tmp_path: Path) -> None:
    malformed = json.dumps({"questions": [{"id": 1, "question": "Which area?", "options": ["a", "b"]}]})
    simulator = SimulatorAdapter(delay_scale=0, responses=[malformed])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Refactor errors", requires_human_review=True))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert simulator.prompts[1].startswith("# PLANNING PHASE: Question Generation Output Repair")
    assert "Invalid questions: questions[0].id" in simulator.prompts[1]
    assert task.planning_status == "waiting_for_answers"
    assert [question.id for question in task.planning_data.questions] == ["q1", "q2"]


def test_malformed_questions_block_after_retries(tmp_path: Path) -> None:
    malformed = json.dumps({"questions": [{"id": "q1", "question": "Which area?", "options": "a or b"}]})
    simulator = SimulatorAdapter(delay_scale=0, responses=[malformed] * 3)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Refactor errors", requires_human_review=True))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert len(simulator.prompts) == 3
    assert task.status == "blocked"
    assert task.planning_data is None
    assert "Invalid questions" in task.last_error
    assert "questions[0].options" in task.last_error


def test_null_questions_alongside_plan_is_treated_as_plan(tmp_path: Path) -> None:
    output = json.dumps({"questions": None, "plan": SIMULATED_PLAN})
    simulator = SimulatorAdapter(delay_scale=0, responses=[output])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Refactor errors", requires_human_review=True))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert len(simulator.prompts) == 1
    assert task.planning_status == "plan_ready"
    assert task.plan_content == SIMULATED_PLAN
    assert task.status == "pending"


def test_autonomous_plan_ignores_extra_questions(tmp_path: Path) -> None:
    questions = [{"id": "q1", "question": "Which area?", "options": ["a", "b"]}]
    output = json.dumps({"questions": questions, "plan": SIMULATED_PLAN})
    simulator = SimulatorAdapter(delay_scale=0, responses=[output])
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def scenario():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert task.planning_data is None
    assert task.plan_content == SIMULATED_PLAN
    assert task.phase == "human_review"
    assert task.status == "completed"


def _planned_task(**overrides) -> TaskRecord:
    fields = dict(
        id="task-1",
        title="Add caching",
        plan_content=SIMULATED_PLAN,
        planning_status="plan_ready",
        requires_human_review=True,
    )
    fields.update(overrides)
    return TaskRecord(**fields)


def test_modify_plan_inline_edit(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(_planned_task(plan_approved=True, status="blocked", last_error="stale"))
    edited = "# Plan\n\n## Overview\nToo short to be useful."

    result = asyncio.run(orchestrator.modify_plan("task-1", new_plan=edited))
    task = store.load("task-1")

    assert result["thread_id"] is None
    assert result["validation"]["valid"] is False
    assert task.plan_content == edited
    assert task.plan_approved is False
    assert task.planning_status == "plan_ready"
    assert task.status == "pending"
    assert task.last_error is None
    assert simulator.prompts == []
    assert "[Plan Modified - Inline Edit]" in orchestrator.planning_log("task-1").read()


def test_modify_plan_from_feedback_waits_for_review(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(_planned_task(requires_human_review=False, plan_approved=True))

    async def scenario():
        result = await orchestrator.modify_plan("task-1", feedback="Use Redis instead of an in-process cache")
        await _settle(registry, orchestrator, "task-1")
        return result

    result = asyncio.run(scenario())
    task = store.load("task-1")

    assert result["thread_id"] is not None
    assert "**User Feedback:**\nUse Redis instead of an in-process cache" in simulator.prompts[0]
    assert SIMULATED_PLAN in simulator.prompts[0]
    assert task.planning_status == "plan_ready"
    assert task.plan_approved is False
    assert task.subtasks == []
    assert "[Plan Modification Requested]" in orchestrator.planning_log("task-1").read()


def test_modify_plan_arguments(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(_planned_task())
    store.save(TaskRecord(id="task-2", title="No plan yet"))

    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.modify_plan("task-1"))
    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.modify_plan("task-1", new_plan=SIMULATED_PLAN, feedback="both"))
    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.modify_plan("task-1", new_plan="   "))
    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.modify_plan("task-2", feedback="shorter please"))


def test_retry_plan_parse_recovers_plan_from_log(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching", status="blocked", planning_status="generating_plan", last_error="parse failed"))
    audit = orchestrator.planning_log("task-1")
    audit.append(f"{OUTPUT_MARKER}Sorry")
    audit.append(f"{OUTPUT_MARKER}Here you go:\n```json\n{VALID_PLAN}\n```")

    result = asyncio.run(orchestrator.retry_plan_parse("task-1"))
    task = store.load("task-1")

    assert result["recovered"] is True
    assert result["thread_id"] is None
    assert task.plan_content == SIMULATED_PLAN
    assert task.planning_status == "plan_ready"
    assert task.status == "pending"
    assert task.last_error is None
    assert simulator.prompts == []
    assert "[Retry Parse] Successfully extracted plan. Task resumed." in audit.read()


def test_retry_plan_parse_uses_plan_file(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0, responses=["no json here"] * 3)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching"))

    async def planning():
        await orchestrator.start_planning("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(planning())
    assert store.load("task-1").status == "blocked"
    plan_file = tmp_path / "implementation_plan.json"
    plan_file.write_text(VALID_PLAN, encoding="utf-8")

    result = asyncio.run(orchestrator.retry_plan_parse("task-1"))
    task = store.load("task-1")

    assert result["recovered"] is True
    assert task.plan_content == SIMULATED_PLAN
    assert task.planning_status == "plan_ready"
    assert not plan_file.exists()
    assert len(simulator.prompts) == 3


def test_retry_plan_parse_reinvokes_with_saved_answers(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    questions = [
        PlanningQuestion(
            id="q1",
            question="Which backend?",
            options=["Redis", "Memcached"],
            order=1,
            answer=PlanningAnswer(selected_option="Redis"),
        )
    ]
    store.save(
        TaskRecord(
            id="task-1",
            title="Add caching",
            requires_human_review=True,
            status="blocked",
            planning_status="generating_plan",
            planning_data=PlanningData(questions=questions, status="completed"),
        )
    )

    async def scenario():
        result = await orchestrator.retry_plan_parse("task-1")
        await _settle(registry, orchestrator, "task-1")
        return result

    result = asyncio.run(scenario())
    task = store.load("task-1")

    assert result["recovered"] is False
    assert result["thread_id"] is not None
    assert "Q1: Which backend?\nA: Redis" in simulator.prompts[0]
    assert task.planning_status == "plan_ready"
    assert task.plan_content == SIMULATED_PLAN
    assert "[Resume] Re-invoking plan generation with saved answers." in orchestrator.planning_log("task-1").read()


def test_retry_plan_parse_without_questions_replans_directly(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Add caching", status="blocked", planning_status="generating_plan"))

    async def scenario():
        await orchestrator.retry_plan_parse("task-1")
        await _settle(registry, orchestrator, "task-1")

    asyncio.run(scenario())
    task = store.load("task-1")

    assert "# PLANNING PHASE: Direct Plan Generation" in simulator.prompts[0]
    assert task.plan_content == SIMULATED_PLAN
    assert task.phase == "human_review"


def test_retry_plan_parse_preconditions(tmp_path: Path) -> None:
    simulator = SimulatorAdapter(delay_scale=0)
    settings, registry, store, orchestrator = _setup(tmp_path, simulator)
    store.save(TaskRecord(id="task-1", title="Idle", planning_status="generating_plan"))
    store.save(TaskRecord(id="task-2", title="Blocked on questions", status="blocked", planning_status="generating_questions"))

    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.retry_plan_parse("task-1"))
    with pytest.raises(GenerationError):
        asyncio.run(orchestrator.retry_plan_parse("task-2"))
