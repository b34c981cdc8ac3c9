"""Rule inspection commands for board-rules CLI."""

import json

from cyclopts import App

from board_rules.expressions import compile_expression

rules_app = App(name="rules", help="Inspect rules and conditions")


@rules_app.command(name="list")
def list_rules(rules_file: str | None = None) -> None:
    """List the rules that would run, in evaluation order."""
    from board_rules.cli import load_configured_rules
    from board_rules.config import load_settings

    rules = load_configured_rules(load_settings(rules_file=rules_file))

    if not rules.rules and not rules.rules.invalid:
        print("No rules configured")
        return

    print(f"Rules from {rules.source}:\n")
    for rule in rules.rules:
        kinds = "|".join(sorted(kind.value for kind in rule.trigger.types))
        actions = ", ".join(spec.name for spec in rule.actions)
        group = f"[{rule.group}] " if rule.group else ""
        print(f"{group}{rule.name} ({kinds}) -> {actions}")
        if rule.trigger.condition is not None:
            print(f"    when: {rule.trigger.condition}")
        if rule.skip_if is not None:
            print(f"    skip if: {rule.skip_if}")
    for invalid in rules.rules.invalid:
        print(f"! {invalid.name}: {invalid.error}")


@rules_app.command
def check(expression: str, item: str = "{}") -> None:
    """Evaluate a condition against an item given as JSON.

    Args:
        expression: Condition, e.g. "item.column == 'New'"
        item: Item fields as a JSON object, e.g. '{"column": "New", "pr": {"merged": true}}'
    """
    compiled = compile_expression(expression)
    context = json.loads(item)
    if not isinstance(context, dict):
        raise ValueError("item must be a JSON object")
    print("true" if compiled.evaluate(context) else "false")
