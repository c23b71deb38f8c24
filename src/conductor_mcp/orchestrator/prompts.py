"""Prompt builders for every agent invocation the orchestrator makes."""

from __future__ import annotations

from typing import Mapping

from ..tasks.models import PlanningAnswer, Subtask, TaskRecord
from ..validation.plan import PLAN_TEMPLATE

_JSON_ONLY = (
    "CRITICAL: the system only captures your text output and cannot read files you create.\n"
    "Your final message must be the raw JSON object, with no markdown fences and no text before or after it."
)

_PLAN_HEADINGS = """- ## Overview
- ## Technical Approach
- ## Implementation Steps (numbered list)
- ## Files to Modify (bullet list of file paths)
- ## Testing Strategy
- ## Potential Issues
- ## Success Criteria"""

_SUBTASK_EXAMPLE = """{
  "subtasks": [
    {
      "id": "subtask-1",
      "content": "Create the request handler in src/api/example.py with input parsing",
      "label": "Create request handler",
      "activeForm": "Creating request handler",
      "type": "dev"
    },
    {
      "id": "subtask-qa-1",
      "content": "Run the test suite and report failures clearly without changing code",
      "label": "Verify tests pass",
      "activeForm": "Verifying tests pass",
      "type": "qa"
    }
  ]
}"""


def _task_header(task: TaskRecord) -> str:
    return (
        f"Title: {task.title}\n"
        f"Description: {task.description or 'No description provided'}\n\n"
        f"CLI Tool: {task.cli_tool or 'Not specified'}\n"
    )


def build_planning_prompt(task: TaskRecord) -> str:
    """Questions first when a human reviews the plan, otherwise a plan straight away."""

    base = (
        "You are an AI planning assistant. Help plan the implementation of the following task:\n\n"
        + _task_header(task)
        + "\n"
    )
    if task.requires_human_review:
        return base + (
            "# PLANNING PHASE 1: Question Generation\n\n"
            "Generate 5-20 multiple-choice questions that clarify the requirements before a plan is written.\n"
            "Cover the technical approach, user priorities, edge cases and error handling, performance, "
            "and testing expectations. Give each question 3-5 options and say whether it is required.\n\n"
            "Return the questions in this JSON format:\n"
            "{\n"
            '  "questions": [\n'
            '    {"id": "q1", "question": "Which storage backend should we use?", '
            '"options": ["SQLite", "PostgreSQL", "Files on disk"], "required": true, "order": 1}\n'
            "  ]\n"
            "}\n\n" + _JSON_ONLY
        )
    return base + (
        "# PLANNING PHASE: Direct Plan Generation\n\n"
        "Create a comprehensive implementation plan with EXACTLY these headings:\n"
        f"{_PLAN_HEADINGS}\n\n"
        "Return the plan in this JSON format:\n"
        '{\n  "plan": "# Implementation Plan\\n\\n## Overview\\n...full markdown plan here..."\n}\n\n'
        + _JSON_ONLY
    )


def format_answer(answer: PlanningAnswer | None) -> str:
    if answer is None:
        return "Not answered"
    selected = answer.selected_option.strip()
    notes = answer.additional_text.strip()
    if selected and notes:
        return f"{selected}\nAdditional notes: {notes}"
    return selected or notes or "Not answered"


def build_plan_generation_prompt(task: TaskRecord, answers: Mapping[str, PlanningAnswer] | None = None) -> str:
    answers = answers or {}
    questions = task.planning_data.questions if task.planning_data else []
    answered = "\n\n".join(
        f"Q{question.order or '?'}: {question.question}\n"
        f"A: {format_answer(answers.get(question.id) or question.answer)}"
        for question in questions
    )
    return (
        "You are an AI planning assistant. Create a detailed implementation plan from the task "
        "requirements and the user's answers to your questions.\n\n"
        + _task_header(task)
        + "\n# User Answers to Planning Questions\n\n"
        + (answered or "No questions were asked.")
        + "\n\n# PLANNING PHASE: Generate Implementation Plan\n\n"
        "Address the user's stated preferences. The plan must use these headings:\n"
        f"{_PLAN_HEADINGS}\n\n"
        "Return the plan in this JSON format:\n"
        '{\n  "plan": "# Implementation Plan\\n\\n## Overview\\n...full markdown plan here..."\n}\n\n'
        + _JSON_ONLY
    )


def build_plan_correction_prompt(task: TaskRecord, previous_plan: str, feedback: str) -> str:
    return (
        "# PLAN GENERATION: Correction\n\n"
        "You previously generated an implementation plan that failed validation against the required format.\n\n"
        f"Task: {task.title}\n"
        f"Description: {task.description or 'No description provided'}\n\n"
        f"Here is your previous plan:\n{previous_plan}\n\n"
        f"{feedback}\n\n"
        "Regenerate the plan so it passes validation. It should follow this template:\n\n"
        f"{PLAN_TEMPLATE}\n\n"
        'Output shape: { "plan": "<markdown>" }\n\n' + _JSON_ONLY
    )


def build_plan_modification_prompt(task: TaskRecord, feedback: str) -> str:
    return (
        "You are an AI planning assistant. You previously created an implementation plan, "
        "but the user has requested modifications.\n\n"
        "**Original Task:**\n" + _task_header(task) + "\n"
        f"**Current Plan:**\n{task.plan_content or ''}\n\n"
        f"**User Feedback:**\n{feedback}\n\n"
        "Regenerate the plan incorporating the user's feedback while keeping the same headings:\n"
        f"{_PLAN_HEADINGS}\n\n"
        "Return your updated plan in this JSON format:\n"
        '{\n  "plan": "# Implementation Plan\\n\\n## Overview\\n...full updated markdown plan here..."\n}\n\n'
        + _JSON_ONLY
    )


def build_parse_fix_prompt(artifact: str, error: str, previous_output: str) -> str:
    """Ask the agent to re-emit its last answer as valid JSON.

    ``artifact`` is ``"plan"``, ``"questions"`` or ``"subtasks"``.
    """

    if artifact == "subtasks":
        shape = _SUBTASK_EXAMPLE
        marker = "# SUBTASK GENERATION: Output Repair"
        files = ""
    elif artifact == "questions":
        shape = '{\n  "questions": [ {"id": "q1", "question": "...", "options": ["..."], "required": true, "order": 1} ]\n}'
        marker = "# PLANNING PHASE: Question Generation Output Repair"
        files = (
            "If you wrote the questions to planning-questions.json or planning_questions.json, "
            "read that file and output its contents.\n"
        )
    else:
        shape = '{\n  "plan": "<markdown string - the full implementation plan content>"\n}'
        marker = "# PLANNING PHASE: Plan Output Repair"
        files = (
            "If you wrote the plan to implementation-plan.json or implementation_plan.json, read that file "
            'and output its contents wrapped as {"plan": "<content>"}.\n'
        )

    return (
        f"{marker}\n\n"
        "Your previous response could not be parsed as valid JSON.\n\n"
        f"Parse error: {error}\n\n"
        "Here is your previous output:\n"
        "---\n"
        f"{previous_output}\n"
        "---\n\n"
        f"{files}"
        "Otherwise extract the content from the output above.\n\n"
        f"Required format:\n{shape}\n\n"
        "Escape quotes inside strings (use \\\" for literal quotes).\n" + _JSON_ONLY
    )


def build_subtask_generation_prompt(task: TaskRecord) -> str:
    return (
        "You are an AI development assistant. Break the approved implementation plan into actionable subtasks.\n\n"
        f"**Task:** {task.title}\n"
        f"**Description:** {task.description or 'No description provided'}\n\n"
        f"**Approved Implementation Plan:**\n{task.plan_content or ''}\n\n"
        "# SUBTASK GENERATION\n\n"
        "Produce 5-15 concrete subtasks that can be executed in order. Each subtask needs:\n"
        '- "id": unique identifier such as "subtask-1"\n'
        '- "content": what to do, naming files and functions\n'
        '- "label": 3-5 word label\n'
        '- "activeForm": present continuous form of the label\n'
        '- "type": "dev" or "qa"\n\n'
        "Order subtasks by dependency and include at least 2 QA subtasks that only verify or test "
        "(run builds and tests, validate docs). Verification work belongs under QA, not dev.\n\n"
        f"Return the subtasks in this JSON format:\n{_SUBTASK_EXAMPLE}\n\n" + _JSON_ONLY
    )


def build_subtask_correction_prompt(task: TaskRecord, feedback: str, previous_output: str) -> str:
    return (
        "# SUBTASK GENERATION: Correction\n\n"
        f"Your subtask list for \"{task.title}\" failed validation.\n\n"
        f"{feedback}\n\n"
        "Here is your previous output:\n---\n"
        f"{previous_output}\n---\n\n"
        f"Return a corrected list in this JSON format:\n{_SUBTASK_EXAMPLE}\n\n" + _JSON_ONLY
    )


def build_subtask_execution_prompt(subtask: Subtask) -> str:
    if subtask.type == "qa":
        return (
            "Execute the following QA verification subtask:\n\n"
            f"**QA Subtask:** {subtask.label}\n"
            f"**Details:** {subtask.content}\n\n"
            "Verify and test this thoroughly. Report problems clearly instead of changing production code."
        )
    return (
        "Execute the following subtask as part of the implementation plan:\n\n"
        f"**Subtask:** {subtask.label}\n"
        f"**Details:** {subtask.content}\n\n"
        "Implement this subtask completely and keep changes focused on it."
    )


__all__ = [
    "build_parse_fix_prompt",
    "build_plan_correction_prompt",
    "build_plan_generation_prompt",
    "build_plan_modification_prompt",
    "build_planning_prompt",
    "build_subtask_correction_prompt",
    "build_subtask_execution_prompt",
    "build_subtask_generation_prompt",
    "format_answer",
]
