"""Prompt builders for the agent phases: implement, resolve, review, fix."""

from __future__ import annotations

from braid.tasks.model import Project, Task


def _dependency_context(task: Task, dependencies: list[Task]) -> str:
    if not dependencies:
        return "None"
    lines = []
    for dep in dependencies:
        lines.append(f"- {dep.title} ({dep.id}) [{dep.status.value}]")
    return "\n".join(lines)


def build_task_prompt(
    task: Task,
    *,
    project: Project | None,
    dependencies: list[Task],
    branch_name: str,
) -> str:
    requirements = project.requirements.strip() if project and project.requirements else "None given"
    return f"""You are working on a specific task. Focus ONLY on this task:

TASK ID: {task.id}
TASK: {task.title}

DESCRIPTION:
{task.description or task.title}

COMPLETED DEPENDENCIES (their code is already on the integration branch):
{_dependency_context(task, dependencies)}

PROJECT REQUIREMENTS:
{requirements}

Instructions:
1. Implement this specific task completely by creating/editing the necessary code files.
2. Write tests if appropriate.
3. Commit your changes with a descriptive message.

CRITICAL RULES:
- You are on branch {branch_name}. Commit on this branch only; do not switch branches.
- Do NOT push, merge or rebase. Integration happens after you finish.
- If a file does not exist, CREATE IT.

Focus only on implementing: {task.title}"""


def build_conflict_prompt(path: str, content: str, task: Task) -> str:
    return f"""Resolve the git merge conflict in the file {path}.

The conflict comes from integrating task "{task.title}" ({task.id}):
{task.description or task.title}

Rules:
1. Read the conflict markers (<<<<<<<, =======, >>>>>>>).
2. Combine BOTH sides intelligently; keep every behavior that still makes sense.
3. Remove all conflict markers and keep the syntax valid.
4. Reply with the COMPLETE resolved file content and nothing else.
   No explanations, no surrounding prose.

Current file content:
{content}"""


def build_review_prompt(task: Task, requirements: str) -> str:
    return f"""Review the implementation of this task in the current repository.

TASK: {task.title} ({task.id})
DESCRIPTION:
{task.description or task.title}

PROJECT REQUIREMENTS:
{requirements or "None given"}

Check correctness against the description, test coverage, error handling,
naming consistency and broken imports or references.

Reply with a JSON block in exactly this format:
```json
{{
  "qualityScore": 0.0,
  "issues": ["..."],
  "suggestions": ["..."],
  "summary": "Brief overall assessment"
}}
```
qualityScore is a number from 0 to 10."""


def build_fix_prompt(task: Task, issues: list[str], suggestions: list[str], requirements: str) -> str:
    issue_text = "\n".join(f"- {i}" for i in issues) or "- (none listed)"
    suggestion_text = "\n".join(f"- {s}" for s in suggestions) or "- (none listed)"
    return f"""A code review of task "{task.title}" ({task.id}) found problems.

DESCRIPTION:
{task.description or task.title}

PROJECT REQUIREMENTS:
{requirements or "None given"}

ISSUES:
{issue_text}

SUGGESTIONS:
{suggestion_text}

Fix every issue in place, keep existing tests passing and add tests where
they are missing. Commit your changes with a descriptive message."""
