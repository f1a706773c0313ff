from __future__ import annotations

from collections.abc import Sequence

from pydantic import BaseModel, Field

from .models import RequestClassification, WorkflowDefinition

CLASSIFICATION_SYSTEM_PROMPT = """You are a request classifier for a software agent system.

Analyze the issue request and classify it into ONE of these categories:

**question**: User is asking a question, seeking information, or requesting explanation.
- Examples: "How does X work?", "What is the purpose of Y?", "Explain the architecture"

**documentation**: User wants documentation, markdown, or comments edited (no code changes).
- Examples: "Update the README", "Add docstrings to functions", "Fix typos in docs"

**transient**: Request involves MCP tools, temporary files, or no codebase interaction.
- Examples: "Search the web for X", "Generate a diagram", "Use the tracker MCP to check issues"

**planning**: Request has vague requirements, needs clarification, or asks for an implementation plan.
- Examples: "Can you help with the authentication system?", "I need to improve performance"
- Use when requirements are unclear, missing details, or user asks for a plan/proposal
- DO NOT use if the request has clear, specific requirements (use "code" instead)
- DO NOT use for adding/writing tests, fixing tests, or other test-related work (use "code" instead)

**debugger**: User EXPLICITLY requests the full debugging workflow with reproduction and approval.
- ONLY use this if the user specifically asks for: "debug this with approval workflow", "reproduce the bug first"
- DO NOT use for regular bug reports - those should use "code"

**orchestrator**: User EXPLICITLY requests decomposition into sub-issues with specialized agent delegation.
- ONLY use this if the user specifically asks for: "break this into sub-issues", "orchestrate this work", "use sub-agents"
- DO NOT use for regular complex work - those should use "code"

**code**: Request involves code changes with clear, specific requirements (DEFAULT for most work).
- Examples: "Fix bug in X", "Add feature Y", "Refactor module Z", "Implement new API endpoint"
- Use this for ALL standard bug fixes and features with clear requirements
- Use this for ALL test-related work: "Add unit tests", "Fix failing tests", "Write test coverage"

**user-testing**: User EXPLICITLY requests a manual testing or user testing session.
- ONLY use this if the user specifically asks for: "test this for me", "run a testing session", "manual testing"
- DO NOT use for automated test writing (use "code" instead)

**release**: User EXPLICITLY requests a release, publish, or deployment workflow.
- ONLY use this if the user specifically asks for: "release", "publish", "deploy to npm", "create a release"
- DO NOT use for regular code changes that mention versions (use "code" instead)

IMPORTANT: Respond with ONLY the classification word, nothing else."""

CLASSIFICATION_VOCABULARY: tuple[str, ...] = tuple(item.value for item in RequestClassification)


def classification_request(request_text: str) -> str:
    return f"Classify this issue request:\n\n{request_text}"


def selection_request(request_text: str) -> str:
    return f"Select the best workflow for this issue:\n\n{request_text}"


def _describe_workflow(definition: WorkflowDefinition) -> str:
    parts = [f"### {definition.name}", definition.description]
    triggers = definition.triggers
    if triggers is not None:
        if triggers.labels:
            parts.append(f"Labels: {', '.join(triggers.labels)}")
        if triggers.keywords:
            parts.append(f"Keywords: {', '.join(triggers.keywords)}")
        if triggers.examples:
            examples = "\n".join(f'- "{example}"' for example in triggers.examples)
            parts.append(f"Examples:\n{examples}")
    if definition.priority > 0:
        parts.append(f"Priority: {definition.priority}")
    return "\n".join(parts)


def build_selection_system_prompt(definitions: Sequence[WorkflowDefinition]) -> str:
    """Describe every candidate workflow, highest priority first."""
    ordered = sorted(definitions, key=lambda definition: definition.priority, reverse=True)
    descriptions = "\n\n".join(_describe_workflow(definition) for definition in ordered)
    return (
        "You are a workflow router for a software agent system.\n\n"
        "Select the BEST workflow for the given issue based on the workflow descriptions and triggers below.\n\n"
        "## Available Workflows\n\n"
        f"{descriptions}\n\n"
        "## Selection Guidelines\n\n"
        "1. Match the issue against workflow descriptions first\n"
        '2. Consider labels mentioned in the issue (e.g., "bug", "feature", "docs")\n'
        "3. Look for keywords that indicate workflow fit\n"
        "4. When multiple workflows could match, prefer the one with higher priority\n"
        '5. If truly unsure, default to "full-development" for code changes or "simple-question" for questions\n\n'
        "IMPORTANT: Respond with ONLY the workflow name, nothing else."
    )


class IssueContext(BaseModel):
    """Issue fields that feed the classification prompt."""

    identifier: str
    title: str
    description: str | None = None
    state: str | None = None
    priority: str | None = None
    labels: list[str] = Field(default_factory=list)
    url: str | None = None
    new_comment: str | None = None


def format_issue_xml(issue: IssueContext, *, include_details: bool = True) -> str:
    parts = ["<issue>", f"  <identifier>{issue.identifier}</identifier>", f"  <title>{issue.title}</title>"]
    if include_details:
        if issue.description:
            parts.extend(["  <description>", issue.description, "  </description>"])
        if issue.state:
            parts.append(f"  <state>{issue.state}</state>")
        if issue.priority:
            parts.append(f"  <priority>{issue.priority}</priority>")
        if issue.labels:
            parts.append(f"  <labels>{', '.join(issue.labels)}</labels>")
    if issue.url:
        parts.append(f"  <url>{issue.url}</url>")
    parts.append("</issue>")
    return "\n".join(parts)


def build_classification_prompt(issue: IssueContext) -> str:
    """Render the request text handed to the selector for ``issue``."""
    sections = [format_issue_xml(issue)]
    if issue.new_comment:
        sections.append("")
        sections.append(f"<new_comment>\n{issue.new_comment}\n</new_comment>")
    return "\n".join(sections)
