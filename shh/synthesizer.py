from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .catalog import Catalog
from .profile import BehavioralProfile

logger = logging.getLogger("synthesizer")


@dataclass(frozen=True)
class Choice:
    directive: str
    level: str
    default: bool
    lines: Tuple[Tuple[str, str], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "directive": self.directive,
            "level": self.level,
            "default": self.default,
            "lines": [list(line) for line in self.lines],
        }


@dataclass
class DirectiveSet:
    """Outcome of synthesis: one choice per catalog directive, in dependency order."""
    choices: Dict[str, Choice] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    iterations: int = 0

    def options(self) -> List[Tuple[str, str]]:
        """Key/value lines of every directive not left at its default."""
        out: List[Tuple[str, str]] = []
        for choice in self.choices.values():
            if not choice.default:
                out.extend(choice.lines)
        return out

    @property
    def omitted(self) -> List[str]:
        return [name for name, choice in self.choices.items() if choice.default]

    def level_of(self, name: str) -> Optional[str]:
        choice = self.choices.get(name)
        return choice.level if choice else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "choices": [c.to_dict() for c in self.choices.values()],
            "omitted": self.omitted,
            "warnings": list(self.warnings),
            "iterations": self.iterations,
        }


# ----------------------------
# Ordering and cover
# ----------------------------

def dependency_order(catalog: Catalog) -> List[str]:
    """
    Kahn's algorithm over `depends_on` edges.

    Among ready directives the earliest in catalog order goes first. Members of a
    cycle never become ready; they are appended in catalog order.
    """
    names = catalog.names()
    position = {name: i for i, name in enumerate(names)}
    indegree: Dict[str, int] = {name: 0 for name in names}
    dependents: Dict[str, List[str]] = {name: [] for name in names}
    for d in catalog:
        for dep in d.depends_on:
            # dependencies outside the catalog impose nothing
            if dep in position and dep != d.name:
                indegree[d.name] += 1
                dependents[dep].append(d.name)

    ready = sorted((n for n in names if indegree[n] == 0), key=position.__getitem__)
    order: List[str] = []
    while ready:
        name = ready.pop(0)
        order.append(name)
        for nxt in dependents[name]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                ready.append(nxt)
        ready.sort(key=position.__getitem__)

    if len(order) < len(names):
        cyclic = [n for n in names if n not in set(order)]
        logger.debug("Dependency cycle among: %s", ", ".join(cyclic))
        order.extend(cyclic)
    return order


def greedy_cover(required: Iterable[str], groups: Sequence[Tuple[str, FrozenSet[str]]]) -> List[str]:
    """
    Approximate minimal cover of `required` by named groups.

    Repeatedly takes the group covering the most still-uncovered names; on equal
    gain the group listed first wins. Whatever no group covers is appended by
    name, sorted.
    """
    uncovered: Set[str] = set(required)
    cover: List[str] = []
    remaining = list(groups)
    while uncovered and remaining:
        best_idx, best_gain = -1, 0
        for idx, (_, members) in enumerate(remaining):
            gain = len(members & uncovered)
            if gain > best_gain:
                best_idx, best_gain = idx, gain
        if best_idx < 0:
            break
        name, members = remaining.pop(best_idx)
        cover.append(name)
        uncovered -= members
    cover.extend(sorted(uncovered))
    return cover


def expand_cover(cover: Iterable[str], groups: Sequence[Tuple[str, FrozenSet[str]]]) -> FrozenSet[str]:
    by_name = dict(groups)
    out: Set[str] = set()
    for entry in cover:
        out |= by_name.get(entry, {entry})
    return frozenset(out)


# ----------------------------
# Fixed point
# ----------------------------

def _strictest(catalog: Catalog, name: str, profile: BehavioralProfile, chosen: Mapping[str, str],
               at_most: Optional[str] = None) -> str:
    levels = catalog.levels_of(name)
    if at_most is not None:
        levels = levels[:levels.index(at_most) + 1]
    for level in reversed(levels):
        if catalog.predicate(name, level, profile, chosen):
            return level
    return levels[0]


def _relax(catalog: Catalog, order: Sequence[str], profile: BehavioralProfile, chosen: Dict[str, str]) -> None:
    """Lower any choice whose predicate no longer holds; only ever loosens, so it terminates."""
    changed = True
    while changed:
        changed = False
        for name in order:
            if not catalog.predicate(name, chosen[name], profile, chosen):
                chosen[name] = _strictest(catalog, name, profile, chosen, at_most=chosen[name])
                changed = True


def _filter_required(catalog: Catalog, name: str, profile: BehavioralProfile, chosen: Mapping[str, str]) -> Set[str]:
    required = set(profile.required_syscalls)
    for d in catalog:
        if d.name == name or chosen[d.name] != d.default:
            required |= d.required_syscalls
    return required


def synthesize(
        profile: BehavioralProfile,
        catalog: Catalog,
        max_iterations: int = 16,
        directives: Optional[Iterable[str]] = None,
) -> DirectiveSet:
    """
    Choose the strictest level of every directive that the profile still allows.

    Levels are re-evaluated in dependency order until nothing changes. If the
    choices cycle or `max_iterations` passes do not settle them, the directives
    that kept changing fall back to their most permissive level.
    """
    if max_iterations < 1:
        raise ValueError("max_iterations must be at least 1")
    warnings: List[str] = []
    if directives is not None:
        wanted = []
        for name in directives:
            if name not in catalog:
                logger.warning("Skipping unknown directive: %s", name)
                warnings.append(f"unknown directive {name} skipped")
                continue
            wanted.append(name)
        catalog = catalog.subset(wanted)

    order = dependency_order(catalog)
    chosen: Dict[str, str] = {name: catalog.default_of(name) for name in order}
    history: List[Dict[str, str]] = [dict(chosen)]
    seen: Dict[Tuple[str, ...], int] = {tuple(chosen[n] for n in order): 0}

    iterations = 0
    converged = False
    unstable: Set[str] = set()
    while iterations < max_iterations:
        iterations += 1
        previous = dict(chosen)
        for name in order:
            chosen[name] = _strictest(catalog, name, profile, chosen)
        if chosen == previous:
            converged = True
            break
        key = tuple(chosen[n] for n in order)
        if key in seen:
            cycle = history[seen[key]:]
            unstable = {n for n in order if len({state[n] for state in cycle}) > 1}
            break
        seen[key] = len(history)
        history.append(dict(chosen))

    if not converged:
        if not unstable:
            unstable = {n for n in order if chosen[n] != previous[n]}
        for name in order:
            if name in unstable:
                chosen[name] = catalog.default_of(name)
                warnings.append(f"{name} did not converge; left at {chosen[name]}")
        logger.warning("Synthesis did not converge after %d iteration(s); relaxed: %s",
                       iterations, ", ".join(n for n in order if n in unstable))
        _relax(catalog, order, profile, chosen)

    result = DirectiveSet(warnings=warnings, iterations=iterations)
    for name in order:
        d = catalog.get(name)
        level = chosen[name]
        value = None
        if d.is_filter and level != d.default:
            groups = tuple(catalog.groups_of(name).items())
            cover = greedy_cover(_filter_required(catalog, name, profile, chosen), groups)
            value = " ".join(cover)
        lines = catalog.render(name, level, profile, chosen, value=value)
        result.choices[name] = Choice(name, level, level == d.default, tuple(lines))
    return result
