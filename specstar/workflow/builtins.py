"""Workflows that ship with specstar."""

from specstar.lib.ids import workflow_id
from specstar.workflow.types import WorkflowDefinition, WorkflowStep

CAPTURE_ISSUE = WorkflowDefinition(
    id=workflow_id("capture-issue"),
    name="Capture Issue",
    description="Quick issue capture from natural language description",
    source_path="builtin://capture-issue",
    steps=(
        WorkflowStep(
            id="capture",
            name="Capture and Create Issue",
            prompt=(
                "Create a new Linear issue based on this description: {{description}}. "
                "Extract a clear title, detailed description with acceptance criteria, "
                "and suggest appropriate labels."
            ),
        ),
    ),
)

DRAFT_SPEC = WorkflowDefinition(
    id=workflow_id("draft-spec"),
    name="Draft Spec",
    description="Generate technical specification from issue requirements",
    source_path="builtin://draft-spec",
    steps=(
        WorkflowStep(
            id="research",
            name="Research Requirements",
            prompt=(
                "Research the requirements for issue {{issueId}}. Review the issue "
                "description, related code, and existing patterns in the codebase."
            ),
        ),
        WorkflowStep(
            id="draft",
            name="Draft Specification",
            depends_on=("research",),
            prompt=(
                "Draft a technical specification for issue {{issueId}} including: "
                "overview, technical approach, data model changes, API changes, "
                "migration plan, testing strategy, and rollback plan."
            ),
        ),
    ),
)

REFINE_ISSUE = WorkflowDefinition(
    id=workflow_id("refine-issue"),
    name="Refine Issue",
    description="Codebase-aware ticket refinement with technical analysis",
    source_path="builtin://refine-issue",
    steps=(
        WorkflowStep(
            id="analyze",
            name="Analyze Codebase Context",
            prompt=(
                "Analyze the codebase to understand the technical context for issue "
                "{{issueId}}. Identify relevant files, dependencies, and potential "
                "impact areas."
            ),
        ),
        WorkflowStep(
            id="refine",
            name="Refine Issue Details",
            depends_on=("analyze",),
            prompt=(
                "Based on the codebase analysis, refine issue {{issueId}} with: "
                "detailed technical description, implementation approach, affected "
                "files list, estimated complexity, and acceptance criteria."
            ),
        ),
    ),
)

PLAN_CYCLE = WorkflowDefinition(
    id=workflow_id("plan-cycle"),
    name="Plan Cycle",
    description="Cycle planning and capacity estimation",
    source_path="builtin://plan-cycle",
    steps=(
        WorkflowStep(
            id="assess",
            name="Assess Current State",
            prompt=(
                "Assess the current state of all open issues. Categorize by priority, "
                "estimate complexity, and identify blockers."
            ),
        ),
        WorkflowStep(
            id="plan",
            name="Generate Cycle Plan",
            depends_on=("assess",),
            prompt=(
                "Based on the assessment, generate a cycle plan that: prioritizes issues "
                "by impact, groups related work, identifies parallelizable tasks, and "
                "estimates capacity needed."
            ),
        ),
        WorkflowStep(
            id="report",
            name="Create Summary Report",
            depends_on=("plan",),
            prompt=(
                "Create a summary report of the cycle plan including: sprint goals, "
                "issue assignments, risk areas, and success metrics."
            ),
        ),
    ),
)

BUILTIN_WORKFLOWS = (CAPTURE_ISSUE, DRAFT_SPEC, REFINE_ISSUE, PLAN_CYCLE)
