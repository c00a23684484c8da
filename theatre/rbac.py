"""Helpers for comparing RBAC subject lists."""

from __future__ import annotations

from typing import Iterable

from theatre.kube import Subject


def includes_subject(ss: Iterable[Subject], s: Subject) -> bool:
    """True if a subject with the same kind, name and namespace is in ``ss``."""
    return any(
        existing.kind == s.kind and existing.name == s.name and existing.namespace == s.namespace
        for existing in ss
    )


def diff(s1: Iterable[Subject], s2: Iterable[Subject]) -> list[Subject]:
    """Return the subjects of ``s1`` that are not present in ``s2``."""
    s2 = list(s2)
    return [s for s in s1 if not includes_subject(s2, s)]