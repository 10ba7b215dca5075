"""
Step generation and implicit dependency resolution.

The functions here operate purely on mappings and domain models and do
not touch the file system.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..domain import ACTIONS, LAYERS, Step
from ..errors import PlanValidationError

LOG = logging.getLogger(__name__)

# (collection key, id infix, target template, layer, estimated tokens)
_STRUCTURED_PARTS = (
    ("models", "model", "src/models/{name}.js", "database", 1500),
    ("routes", "route", "src/routes/{name}.js", "backend", 2000),
    ("components", "comp", "src/components/{name}.jsx", "frontend", 2500),
)


def extract_features(app_spec: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """
    Extract feature descriptors from an app specification.

    `features` wins over `pages`, which wins over a bare `description`.
    """

    features = app_spec.get("features")
    if isinstance(features, list):
        return [dict(f) for f in features]

    pages = app_spec.get("pages")
    if isinstance(pages, list):
        return [
            {
                "id": f"page_{page['name']}",
                "name": page["name"],
                "type": "page",
                "components": list(page.get("components") or []),
                "routes": list(page.get("routes") or []),
            }
            for page in pages
        ]

    if app_spec.get("description"):
        return [
            {
                "id": "main_feature",
                "name": app_spec.get("name") or "Main Feature",
                "description": app_spec["description"],
                "type": "general",
            }
        ]

    return []


def generate_steps(feature: Mapping[str, Any], analysis: Optional[Mapping[str, Any]] = None) -> List[Step]:
    """
    Expand one feature descriptor into atomic steps.

    Models, routes, and components each produce a `create` step. Explicit
    `changes` produce steps with their declared action. When nothing
    structured is present a single general-layer step is emitted.
    """

    feature_id = feature.get("id") or feature.get("name") or "feature"
    steps: List[Step] = []
    counter = 0

    for key, infix, template, layer, tokens in _STRUCTURED_PARTS:
        for part in feature.get(key) or []:
            name = _part_name(part)
            steps.append(
                Step(
                    id=f"{feature_id}_{infix}_{counter}",
                    feature_id=feature_id,
                    action="create",
                    target=template.format(name=name),
                    layer=layer,
                    estimated_tokens=tokens,
                    risk_level="low",
                    description=f"Create {name} {key[:-1]}",
                )
            )
            counter += 1

    for change in feature.get("changes") or []:
        action = change.get("action", "modify")
        layer = change.get("layer", "general")
        if action not in ACTIONS:
            raise PlanValidationError(f"feature {feature_id}: unsupported action {action!r}")
        if layer not in LAYERS:
            raise PlanValidationError(f"feature {feature_id}: unsupported layer {layer!r}")
        steps.append(
            Step(
                id=f"{feature_id}_change_{counter}",
                feature_id=feature_id,
                action=action,
                target=change["target"],
                layer=layer,
                dependencies=tuple(change.get("dependencies") or ()),
                estimated_tokens=int(change.get("estimated_tokens", 2000)),
                risk_level=change.get("risk_level", "medium"),
                description=change.get("description") or f"{action.capitalize()} {change['target']}",
            )
        )
        counter += 1

    if not steps:
        name = feature.get("name") or feature_id
        steps.append(
            Step(
                id=f"{feature_id}_impl",
                feature_id=feature_id,
                action="create",
                target=infer_target_path(feature, analysis),
                layer="general",
                estimated_tokens=3000,
                risk_level="medium",
                description=feature.get("description") or f"Implement {name}",
            )
        )

    LOG.debug("Feature %s expanded into %d steps", feature_id, len(steps))
    return steps


def infer_target_path(feature: Mapping[str, Any], analysis: Optional[Mapping[str, Any]] = None) -> str:
    name = feature.get("name") or feature.get("id") or "feature"
    kind = feature.get("type")
    patterns = (analysis or {}).get("patterns")

    if patterns:
        frontend = _framework_names((patterns.get("frameworks") or {}).get("frontend"))
        if kind in ("component", "page"):
            if "React" in frontend:
                return f"src/components/{name}.jsx"
            if "Vue" in frontend:
                return f"src/components/{name}.vue"
        if kind in ("api", "route"):
            return f"src/routes/{name}.js"
        if kind == "model":
            return f"src/models/{name}.js"

    return f"src/{name}.js"


def resolve_dependencies(steps: Iterable[Step]) -> List[Step]:
    """
    Add implicit same-feature edges to every step.

    Backend steps depend on the feature's database steps; frontend steps
    depend on its backend and database steps. Declared dependencies stay
    first and duplicates are dropped keeping the first occurrence.
    """

    steps = list(steps)
    by_feature: Dict[str, Dict[str, List[str]]] = {}
    for step in steps:
        layers = by_feature.setdefault(step.feature_id, {})
        layers.setdefault(step.layer, []).append(step.id)

    resolved: List[Step] = []
    for step in steps:
        layers = by_feature[step.feature_id]
        implicit: List[str] = []
        if step.layer == "backend":
            implicit = layers.get("database", [])
        elif step.layer == "frontend":
            implicit = layers.get("backend", []) + layers.get("database", [])

        merged = _dedupe(list(step.dependencies) + [i for i in implicit if i != step.id])
        if tuple(merged) != step.dependencies:
            step = dataclasses.replace(step, dependencies=tuple(merged))
        resolved.append(step)

    return resolved


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


def _part_name(part: Any) -> str:
    if isinstance(part, Mapping):
        return str(part["name"])
    return str(part)


def _framework_names(entries: Any) -> List[str]:
    names: List[str] = []
    for entry in entries or []:
        if isinstance(entry, Mapping):
            names.append(str(entry.get("name")))
        else:
            names.append(str(entry))
    return names
