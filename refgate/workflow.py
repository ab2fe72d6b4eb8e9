"""
Workflow definition for refgate.

Describes the ordered phases, their gate criteria, the workflow-wide
post-check set applied after every transformation, and the integrity set
used to verify the system after a rollback.

Stored as YAML in .refgate/workflow.yaml:

    phases:
      - name: Assessment
        entry: []
        exit: ['ArtifactPresent("risk-assessment")']
      - name: SafetyNet
        entry: ['ArtifactPresent("risk-assessment")']
        exit: ['CoverageAtLeast(90)']
    post_check: ['CoverageNotDecreased']
    integrity: ['TestsPassing']

Phase ordinals follow list order unless given explicitly.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from refgate.config import get_state_dir
from refgate.errors import ConfigError
from refgate.models.phase import PhaseDefinition


DEFAULT_PHASES = [
    PhaseDefinition(
        name="Assessment",
        ordinal=0,
        entry_criteria=[],
        exit_criteria=[
            'ArtifactPresent("risk-assessment")',
            'ArtifactPresent("antipattern-inventory")',
            'ArtifactPresent("dependency-graph")',
        ],
        description="Inventory risk, antipatterns and dependencies",
    ),
    PhaseDefinition(
        name="SafetyNet",
        ordinal=1,
        entry_criteria=['ArtifactPresent("risk-assessment")'],
        exit_criteria=[
            "CoverageAtLeast(90)",
            'ArtifactPresent("seam-analysis")',
            'ArtifactPresent("security-baseline")',
        ],
        description="Build characterization tests and baselines",
    ),
    PhaseDefinition(
        name="Transformation",
        ordinal=2,
        entry_criteria=["CoverageAtLeast(90)", 'ArtifactPresent("seam-analysis")'],
        exit_criteria=["TestsPassing"],
        post_check=["CoverageAtLeast(90)", "TestsPassing"],
        description="Small guarded refactorings",
    ),
    PhaseDefinition(
        name="Validation",
        ordinal=3,
        entry_criteria=["TestsPassing"],
        exit_criteria=["TestsPassing", "CoverageAtLeast(90)", "SecurityFindingsAtMost(0, high)"],
        description="Validate behaviour, coverage and security",
    ),
]

DEFAULT_INTEGRITY = ["TestsPassing"]


@dataclass
class WorkflowDefinition:
    """Ordered phases plus workflow-wide criterion sets."""
    phases: List[PhaseDefinition] = field(default_factory=list)
    post_check: List[str] = field(default_factory=list)
    integrity: List[str] = field(default_factory=lambda: list(DEFAULT_INTEGRITY))

    @classmethod
    def default(cls) -> "WorkflowDefinition":
        return cls(phases=[PhaseDefinition.from_dict(p.to_dict()) for p in DEFAULT_PHASES])

    def phase(self, name: str) -> Optional[PhaseDefinition]:
        for p in self.phases:
            if p.name == name:
                return p
        return None

    def ordered(self) -> List[PhaseDefinition]:
        return sorted(self.phases, key=lambda p: p.ordinal)

    def predecessors(self, name: str) -> List[PhaseDefinition]:
        target = self.phase(name)
        if target is None:
            return []
        return [p for p in self.ordered() if p.ordinal < target.ordinal]

    def names(self) -> List[str]:
        return [p.name for p in self.ordered()]

    def validate(self) -> List[str]:
        """Validate the definition."""
        errors = []
        if not self.phases:
            errors.append("at least one phase is required")
        seen_names = set()
        seen_ordinals = set()
        for i, p in enumerate(self.phases):
            if not p.name:
                errors.append(f"Phase {i}: name is required")
            elif p.name in seen_names:
                errors.append(f"Phase {i}: duplicate name {p.name!r}")
            if p.ordinal in seen_ordinals:
                errors.append(f"Phase {i}: duplicate ordinal {p.ordinal}")
            seen_names.add(p.name)
            seen_ordinals.add(p.ordinal)
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phases": [
                {
                    "name": p.name,
                    "ordinal": p.ordinal,
                    "description": p.description,
                    "entry": list(p.entry_criteria),
                    "exit": list(p.exit_criteria),
                    "post_check": list(p.post_check),
                }
                for p in self.ordered()
            ],
            "post_check": list(self.post_check),
            "integrity": list(self.integrity),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        phases = []
        for i, raw in enumerate(data.get("phases") or []):
            raw = dict(raw)
            raw.setdefault("ordinal", i)
            phases.append(PhaseDefinition.from_dict(raw))
        integrity = data.get("integrity")
        return cls(
            phases=phases,
            post_check=list(data.get("post_check") or []),
            integrity=list(integrity) if integrity is not None else list(DEFAULT_INTEGRITY),
        )


def get_workflow_path(project_path: str) -> Path:
    return get_state_dir(project_path) / "workflow.yaml"


def load_workflow(project_path: str) -> WorkflowDefinition:
    """Load the workflow definition, falling back to the default phases.

    Raises:
        ConfigError: If the file exists but is unreadable or invalid
    """
    workflow_file = get_workflow_path(project_path)
    if not workflow_file.exists():
        return WorkflowDefinition.default()

    try:
        with open(workflow_file) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {workflow_file}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{workflow_file} must contain a mapping")

    workflow = WorkflowDefinition.from_dict(data)
    errors = workflow.validate()
    if errors:
        raise ConfigError(f"Invalid workflow {workflow_file}", errors)
    return workflow


def save_workflow(project_path: str, workflow: WorkflowDefinition) -> Path:
    workflow_file = get_workflow_path(project_path)
    workflow_file.parent.mkdir(parents=True, exist_ok=True)
    with open(workflow_file, "w") as f:
        yaml.safe_dump(workflow.to_dict(), f, sort_keys=False)
    return workflow_file
