from __future__ import annotations

from collections import defaultdict
from typing import Dict, List

from services.commands_registry import command_specs, get_group_order


def grouped_command_lines(*, include_operator: bool = False) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = defaultdict(list)
    for spec in command_specs():
        if spec.operator_only and not include_operator:
            continue
        grouped[spec.group].append(f"{spec.usage} — {spec.description}")

    ordered: Dict[str, List[str]] = {}
    for group in get_group_order():
        if group in grouped:
            ordered[group] = grouped[group]
    return ordered


def help_text(*, include_operator: bool = False) -> str:
    lines: List[str] = ["📖 Commands"]
    for group, entries in grouped_command_lines(include_operator=include_operator).items():
        lines.append("")
        lines.append(group)
        lines.extend(entries)
    return "\n".join(lines)
