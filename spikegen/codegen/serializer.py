"""Serializer for merged models and generation reports.

Summarises which entities were merged for each role, which ID ranges each
merged group owns and how every kernel was launched, as plain JSON.
"""

from __future__ import annotations

import json
from typing import Any

from spikegen.codegen.dispatch import GenerationReport
from spikegen.codegen.model_merged import ModelSpecMerged


def serialize_merged_to_dict(model_merged: ModelSpecMerged,
                             report: GenerationReport | None = None) -> dict[str, Any]:
    """Convert a merged model, and optionally its launches, to a plain dictionary."""
    roles: dict[str, list[dict[str, Any]]] = {}
    for role, merged_groups in model_merged.items():
        roles[role.value] = [
            {
                "index": mg.index,
                "struct": mg.struct_name,
                "archetype": mg.archetype.name,
                "members": [g.name for g in mg.groups],
                "fields": [{"type": f.type, "name": f.name} for f in mg.fields],
            }
            for mg in merged_groups
        ]

    data: dict[str, Any] = {
        "model": model_merged.model.name,
        "backend": model_merged.backend.name,
        "roles": roles,
    }
    if report is not None:
        data["launches"] = report.to_dict()["launches"]
    return data


def serialize_merged_to_json(model_merged: ModelSpecMerged,
                             report: GenerationReport | None = None, indent: int = 2) -> str:
    """Serialize a merged model, and optionally its launches, to a JSON string."""
    return json.dumps(serialize_merged_to_dict(model_merged, report), indent=indent)
