"""
tuition_sync/sync/resolver.py
Dependent-Field Resolver

Form fields whose valid values depend on another field (category depends on
institute type, course on category, ...) are declared once as
(parent, child, predicate) edges and evaluated generically. When a parent
changes, every child whose current value no longer satisfies its predicate
is cleared to "" - never replaced with a guessed value. Clearing a child
re-evaluates the fields that depend on it in turn.

The resolver is synchronous, never talks to the Ledger Service and is
idempotent.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from tuition_sync.models.schemas import Category, CategoryType, Course, Staff
from tuition_sync.sync.queries import CATEGORIES, COURSES, STAFF

logger = logging.getLogger(__name__)

EMPTY = ""

Predicate = Callable[[Any, Any], bool]


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def is_empty(value: Any) -> bool:
    return value is None or value == EMPTY


@dataclass(frozen=True)
class DependentEdge:
    parent: str
    child: str
    predicate: Predicate  # (parent_value, child_value) -> still valid?


class DependentFieldResolver:
    """Evaluates a table of dependent-field edges against a selection record"""

    def __init__(self, edges: Iterable[DependentEdge] = ()):
        self._edges: List[DependentEdge] = list(edges)

    @property
    def edges(self) -> List[DependentEdge]:
        return list(self._edges)

    def register(self, parent: str, child: str, predicate: Predicate) -> DependentEdge:
        edge = DependentEdge(parent=parent, child=child, predicate=predicate)
        self._edges.append(edge)
        return edge

    def edges_from(self, parent: str) -> List[DependentEdge]:
        return [edge for edge in self._edges if edge.parent == parent]

    def on_parent_change(
        self,
        parent_field: str,
        new_value: Any,
        current_selections: Mapping[str, Any]
    ) -> Dict[str, Any]:
        """
        Apply a parent selection change and clear every child it invalidates

        Args:
            parent_field: Field the user changed (e.g. "institute_type")
            new_value: Its new value
            current_selections: The form's current field values

        Returns:
            dict: Revised selections; the input mapping is left untouched

        Example:
            >>> resolver.on_parent_change("institute_type", "school", {"category_id": "cat-college"})
            {'category_id': '', 'institute_type': 'school'}
        """
        revised = dict(current_selections)
        revised[parent_field] = new_value
        self._cascade(parent_field, revised, {parent_field})
        return revised

    def resolve(self, selections: Mapping[str, Any]) -> Dict[str, Any]:
        """Re-validate a complete selection record, parents first in edge order"""
        revised = dict(selections)
        visited: Set[str] = set()
        for parent in self._parents():
            if parent in revised and parent not in visited:
                visited.add(parent)
                self._cascade(parent, revised, visited)
        return revised

    def _parents(self) -> List[str]:
        seen: List[str] = []
        for edge in self._edges:
            if edge.parent not in seen:
                seen.append(edge.parent)
        return seen

    def _cascade(self, parent: str, selections: Dict[str, Any], visited: Set[str]) -> None:
        parent_value = _plain(selections.get(parent, EMPTY))
        for edge in self.edges_from(parent):
            child_value = _plain(selections.get(edge.child, EMPTY))
            if is_empty(child_value):
                continue
            if not is_empty(parent_value) and edge.predicate(parent_value, child_value):
                continue
            logger.debug(f"Clearing {edge.child}={child_value!r}: invalid for {parent}={parent_value!r}")
            selections[edge.child] = EMPTY
            if edge.child not in visited:
                visited.add(edge.child)
                self._cascade(edge.child, selections, visited)


# ============================================
# DASHBOARD EDGE TABLE
# ============================================

class Catalog:
    """Id lookups over the catalog lists a view currently has cached"""

    def __init__(
        self,
        categories: Iterable[Category] = (),
        courses: Iterable[Course] = (),
        staff: Iterable[Staff] = ()
    ):
        self.categories: Dict[str, Category] = {c.category_id: c for c in categories if c.category_id}
        self.courses: Dict[str, Course] = {c.course_id: c for c in courses if c.course_id}
        self.staff: Dict[str, Staff] = {s.staff_id: s for s in staff if s.staff_id}

    @classmethod
    def from_cache(cls, cache) -> "Catalog":
        """Union of every cached category, course and staff list (optimistic rows included)"""

        def collect(entity: str) -> List[Any]:
            rows: List[Any] = []
            for signature in cache.signatures(entity):
                snapshot = cache.read(signature)
                if snapshot is not None:
                    rows.extend(snapshot.payload or [])
            return rows

        return cls(collect(CATEGORIES), collect(COURSES), collect(STAFF))


def default_edges(catalog: Catalog, strict: bool = True) -> List[DependentEdge]:
    """
    The (parent, child, predicate) table shared by every admission/course/staff form

    Args:
        catalog: Lookups the predicates evaluate against
        strict: When True a child id missing from the catalog is invalid (forms
            only offer catalog rows). When False only ids known to mismatch are
            cleared, which is what a commit wants when some lists are not loaded.
    """

    def category_in_institute(institute_type: Any, category_id: Any) -> bool:
        category: Optional[Category] = catalog.categories.get(category_id)
        if category is None:
            return not strict
        return _plain(category.institute_type) == institute_type

    def course_in_institute(institute_type: Any, course_id: Any) -> bool:
        course: Optional[Course] = catalog.courses.get(course_id)
        if course is None:
            return not strict
        return _plain(course.institute_type) == institute_type

    def instructor_in_institute(institute_type: Any, staff_id: Any) -> bool:
        member: Optional[Staff] = catalog.staff.get(staff_id)
        if member is None:
            return not strict
        return _plain(member.institute_type) == institute_type

    def staff_category_in_institute(institute_type: Any, category_id: Any) -> bool:
        category: Optional[Category] = catalog.categories.get(category_id)
        if category is None:
            return not strict
        return _plain(category.institute_type) == institute_type and category.category_type == CategoryType.STAFF

    def course_in_category(category_id: Any, course_id: Any) -> bool:
        course: Optional[Course] = catalog.courses.get(course_id)
        if course is None:
            return not strict
        return course.category_id == category_id

    return [
        DependentEdge("institute_type", "category_id", category_in_institute),
        DependentEdge("institute_type", "course_id", course_in_institute),
        DependentEdge("institute_type", "instructor_id", instructor_in_institute),
        DependentEdge("institute_type", "staff_category_id", staff_category_in_institute),
        DependentEdge("category_id", "course_id", course_in_category),
    ]


def default_resolver(catalog: Catalog, strict: bool = True) -> DependentFieldResolver:
    return DependentFieldResolver(default_edges(catalog, strict=strict))


__all__ = [
    "EMPTY",
    "DependentEdge",
    "DependentFieldResolver",
    "Catalog",
    "default_edges",
    "default_resolver",
    "is_empty",
]
