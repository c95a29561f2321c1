"""Interactive terminal prompts for choosing a simulator and confirming actions."""

from __future__ import annotations

from collections.abc import Callable, Iterable

from onetap.models import Simulator

InputFn = Callable[[str], str]


def pick_simulator(
    simulators: Iterable[Simulator],
    exclude_udids: Iterable[str] = (),
    input_fn: InputFn = input,
) -> Simulator | None:
    """Print a numbered list of unclaimed simulators and read a choice.

    Returns None when nothing is available, on 'q', EOF or invalid input.
    """
    excluded = set(exclude_udids)
    available = [s for s in simulators if s.udid not in excluded]

    if not available:
        print("No available simulators")
        return None

    print("\nAvailable Simulators:\n")
    for index, sim in enumerate(available, start=1):
        print(f"  {index:2d}. {sim.display_string}")

    try:
        choice = input_fn("\n  Enter number (or 'q' to quit): ").strip()
    except EOFError:
        return None

    if choice.lower() == "q":
        return None

    try:
        index = int(choice)
    except ValueError:
        index = 0
    if not 1 <= index <= len(available):
        print("Invalid selection")
        return None

    return available[index - 1]


def confirm(message: str, default: bool = True, input_fn: InputFn = input) -> bool:
    hint = "[Y/n]" if default else "[y/N]"
    try:
        answer = input_fn(f"{message} {hint}: ").strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer in ("y", "yes")
