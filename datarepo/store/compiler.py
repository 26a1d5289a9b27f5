"""
SQL compiler for abstract query plans (SQLite dialect).

Translates a QueryPlan into one parameterized statement. Attribute paths
that cross many-to-one relationships become LEFT JOINs with stable aliases
(``t0`` for the root, ``t1``... in first-use order); fetched relationships
are joined the same way and their columns appended to the select list.

Column labels returned with a SELECT:
    - Entity columns: ``<field>`` and ``<relationship>`` (foreign key) for the
      root, prefixed with ``<relationship>.`` for fetched relationships
    - Projections: the projected paths, in order

Invariants:
    - Values are always bound as parameters, never inlined
    - The same join path is joined once per statement
    - LIKE is case-sensitive (the store enables ``case_sensitive_like``);
      ignore_case compares LOWER() of both sides

How to change safely:
    - Keep label formats in sync with session materialization
    - New comparators need a branch in _condition_sql
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..query.derivation import check_comparator
from ..query.paging import Direction, Sort
from ..query.plan import Increment, PlanKind, QueryPlan
from ..query.predicates import Comparator, Condition, Junction, Negation, Predicate
from ..refs import Ref
from ..schema.paths import ResolvedPath, resolve_path
from ..schema.registry import EntityRegistry
from ..schema.types import EntityType, FieldKind, RelationKind, RelationshipDef


_COLUMN_TYPES = {
    FieldKind.STRING: "TEXT",
    FieldKind.INTEGER: "INTEGER",
    FieldKind.FLOAT: "REAL",
    FieldKind.BOOLEAN: "INTEGER",
    FieldKind.TIMESTAMP: "INTEGER",
}

_OPERATORS = {
    Comparator.EQUALS: "=",
    Comparator.NOT_EQUALS: "<>",
    Comparator.GREATER_THAN: ">",
    Comparator.GREATER_THAN_EQUAL: ">=",
    Comparator.LESS_THAN: "<",
    Comparator.LESS_THAN_EQUAL: "<=",
}

_LIKE_ESCAPE = "\\"


@dataclass(frozen=True)
class CompiledStatement:
    """A statement ready for the driver.

    Attributes:
        sql: Statement text with ``?`` placeholders
        params: Bound values in placeholder order
        columns: Labels of the selected columns (empty for writes)
    """

    sql: str
    params: tuple[Any, ...]
    columns: tuple[str, ...] = ()


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so the value matches literally."""
    return (
        value.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", _LIKE_ESCAPE + "%")
        .replace("_", _LIKE_ESCAPE + "_")
    )


class _Scope:
    """Join aliases allocated while compiling one statement."""

    def __init__(self, registry: EntityRegistry, root: EntityType) -> None:
        self.registry = registry
        self.root = root
        self.aliases: dict[tuple[str, ...], str] = {(): "t0"}
        self.joins: list[str] = []

    def alias_for(self, joins: tuple[RelationshipDef, ...]) -> str:
        """Alias of the table reached by walking ``joins`` from the root."""
        key: tuple[str, ...] = ()
        owner = self.root
        for rel in joins:
            parent_alias = self.aliases[key]
            key = key + (rel.name,)
            target = self.registry.resolve(rel.target)
            if key not in self.aliases:
                alias = f"t{len(self.aliases)}"
                self.aliases[key] = alias
                self.joins.append(self._join_sql(rel, owner, target, parent_alias, alias))
            owner = target
        return self.aliases[key]

    def collection_alias(self, rel: RelationshipDef) -> str:
        """Alias of a one-to-many relationship joined from the root."""
        key = (rel.name,)
        if key not in self.aliases:
            alias = f"t{len(self.aliases)}"
            self.aliases[key] = alias
            target = self.registry.resolve(rel.target)
            self.joins.append(self._join_sql(rel, self.root, target, "t0", alias))
        return self.aliases[key]

    def _join_sql(
        self,
        rel: RelationshipDef,
        owner: EntityType,
        target: EntityType,
        parent_alias: str,
        alias: str,
    ) -> str:
        if rel.kind == RelationKind.MANY_TO_ONE:
            on = f"{alias}.{target.id.column_name} = {parent_alias}.{rel.join_column}"
        else:
            inverse = target.get_relationship(rel.mapped_by or "")
            if inverse is None or inverse.join_column is None:
                raise ValueError(
                    f"'{rel.mapped_by}' is not a many-to-one of '{target.name}'"
                )
            on = f"{alias}.{inverse.join_column} = {parent_alias}.{owner.id.column_name}"
        return f"LEFT JOIN {target.table_name} {alias} ON {on}"

    def from_sql(self) -> str:
        parts = [f"{self.root.table_name} t0"] + self.joins
        return " ".join(parts)


class SqlCompiler:
    """Compiles QueryPlans against the entities of one registry.

    Example:
        >>> compiler = SqlCompiler(registry)
        >>> stmt = compiler.compile(QueryPlan(PlanKind.COUNT, member_type))
        >>> stmt.sql
        'SELECT COUNT(*) FROM member t0'
    """

    def __init__(self, registry: EntityRegistry) -> None:
        self.registry = registry

    def compile(self, plan: QueryPlan) -> CompiledStatement:
        """Compile a plan into one statement.

        Raises:
            UnknownFieldError: If a path in the plan is unknown
        """
        if plan.kind == PlanKind.SELECT:
            return self._select(plan)
        if plan.kind == PlanKind.COUNT:
            return self._count(plan)
        if plan.kind == PlanKind.INSERT:
            return self._insert(plan)
        if plan.kind == PlanKind.UPDATE:
            return self._update(plan)
        if plan.kind == PlanKind.DELETE:
            return self._delete(plan)
        raise ValueError(f"Unsupported plan kind: {plan.kind}")

    # -- SELECT / COUNT ------------------------------------------------------

    def _select(self, plan: QueryPlan) -> CompiledStatement:
        entity = plan.entity
        scope = _Scope(self.registry, entity)
        select: list[str] = []
        labels: list[str] = []

        if plan.columns:
            for column_path in plan.columns:
                resolved = resolve_path(self.registry, entity, column_path)
                select.append(self._column(scope, resolved))
                labels.append(column_path)
        else:
            self._entity_columns(entity, "t0", "", select, labels)
            for name in plan.fetch:
                rel = entity.get_relationship(name)
                if rel is None:
                    resolve_path(self.registry, entity, name)
                    raise ValueError(f"'{name}' is not a relationship of '{entity.name}'")
                target = self.registry.resolve(rel.target)
                if rel.single_valued:
                    alias = scope.alias_for((rel,))
                else:
                    alias = scope.collection_alias(rel)
                self._entity_columns(target, alias, rel.name + ".", select, labels)

        params: list[Any] = []
        where = self._where(scope, plan.predicate, params)
        order = self._order_by(scope, plan.sort)
        sql = f"SELECT {', '.join(select)} FROM {scope.from_sql()}{where}{order}"
        sql += self._window(plan.offset, plan.limit, params)
        return CompiledStatement(sql, tuple(params), tuple(labels))

    def _count(self, plan: QueryPlan) -> CompiledStatement:
        scope = _Scope(self.registry, plan.entity)
        params: list[Any] = []
        where = self._where(scope, plan.predicate, params)
        sql = f"SELECT COUNT(*) FROM {scope.from_sql()}{where}"
        return CompiledStatement(sql, tuple(params), ("count",))

    def _entity_columns(
        self,
        entity: EntityType,
        alias: str,
        prefix: str,
        select: list[str],
        labels: list[str],
    ) -> None:
        for f in entity.fields:
            select.append(f"{alias}.{f.column_name}")
        for rel in entity.many_to_one():
            select.append(f"{alias}.{rel.join_column}")
        labels.extend(entity.column_labels(prefix))

    def _window(self, offset: Optional[int], limit: Optional[int], params: list[Any]) -> str:
        if limit is None and not offset:
            return ""
        params.append(-1 if limit is None else limit)
        params.append(offset or 0)
        return " LIMIT ? OFFSET ?"

    def _order_by(self, scope: _Scope, sort: Sort) -> str:
        if not sort:
            return ""
        terms = []
        for order in sort:
            resolved = resolve_path(self.registry, scope.root, order.path)
            direction = "DESC" if order.direction is Direction.DESC else "ASC"
            terms.append(f"{self._column(scope, resolved)} {direction}")
        return " ORDER BY " + ", ".join(terms)

    # -- predicates ----------------------------------------------------------

    def _where(self, scope: _Scope, predicate: Optional[Predicate], params: list[Any]) -> str:
        if predicate is None:
            return ""
        return " WHERE " + self._predicate_sql(scope, predicate, params)

    def _predicate_sql(self, scope: _Scope, predicate: Predicate, params: list[Any]) -> str:
        if isinstance(predicate, Condition):
            return self._condition_sql(scope, predicate, params)
        if isinstance(predicate, Junction):
            left = self._predicate_sql(scope, predicate.left, params)
            right = self._predicate_sql(scope, predicate.right, params)
            return f"({left} {predicate.connector.name} {right})"
        if isinstance(predicate, Negation):
            return f"NOT ({self._predicate_sql(scope, predicate.inner, params)})"
        raise TypeError(f"Unsupported predicate: {predicate!r}")

    def _condition_sql(self, scope: _Scope, cond: Condition, params: list[Any]) -> str:
        resolved = resolve_path(self.registry, scope.root, cond.path)
        check_comparator(resolved, cond.comparator, cond.ignore_case)
        column = self._column(scope, resolved)
        comparator = cond.comparator

        if comparator is Comparator.IS_NULL:
            return f"{column} IS NULL"
        if comparator is Comparator.IS_NOT_NULL:
            return f"{column} IS NOT NULL"

        if comparator is Comparator.BETWEEN:
            low, high = cond.value
            params.extend([self._scalar(resolved, low), self._scalar(resolved, high)])
            return f"{column} BETWEEN ? AND ?"

        if comparator in (Comparator.IN, Comparator.NOT_IN):
            values = [self._scalar(resolved, v) for v in cond.value]
            if not values:
                return "0 = 1" if comparator is Comparator.IN else "1 = 1"
            if cond.ignore_case:
                column = f"LOWER({column})"
                values = [v.lower() if isinstance(v, str) else v for v in values]
            params.extend(values)
            keyword = "IN" if comparator is Comparator.IN else "NOT IN"
            return f"{column} {keyword} ({', '.join('?' for _ in values)})"

        value = self._scalar(resolved, cond.value)
        if value is None and comparator in (Comparator.EQUALS, Comparator.NOT_EQUALS):
            return f"{column} IS {'NOT ' if comparator is Comparator.NOT_EQUALS else ''}NULL"

        placeholder = "?"
        if cond.ignore_case:
            column = f"LOWER({column})"
            placeholder = "LOWER(?)"

        if comparator in _OPERATORS:
            params.append(value)
            return f"{column} {_OPERATORS[comparator]} {placeholder}"

        if comparator is Comparator.LIKE:
            params.append(value)
            return f"{column} LIKE {placeholder}"

        text = escape_like(str(value))
        if comparator is Comparator.CONTAINING:
            text = f"%{text}%"
        elif comparator is Comparator.STARTING_WITH:
            text = f"{text}%"
        elif comparator is Comparator.ENDING_WITH:
            text = f"%{text}"
        else:
            raise ValueError(f"Unsupported comparator: {comparator}")
        params.append(text)
        return f"{column} LIKE {placeholder} ESCAPE '{_LIKE_ESCAPE}'"

    def _column(self, scope: _Scope, resolved: ResolvedPath) -> str:
        alias = scope.alias_for(resolved.joins)
        return f"{alias}.{resolved.field.column_name}"

    def _scalar(self, resolved: ResolvedPath, value: Any) -> Any:
        """Reduce relationship values (Refs, entities) to their key."""
        if resolved.reference is None or value is None:
            return value
        if isinstance(value, Ref):
            if value.key is not None or not value.resolved:
                return value.key
            value = value.value
        target = self.registry.resolve(resolved.reference.target)
        if isinstance(value, target.cls):
            return target.get_id(value)
        return value

    # -- writes --------------------------------------------------------------

    def _assignment_column(self, entity: EntityType, key: str) -> str:
        field_def = entity.get_field(key)
        if field_def is not None:
            return field_def.column_name
        rel = entity.get_relationship(key)
        if rel is not None and rel.join_column:
            return rel.join_column
        resolve_path(self.registry, entity, key)
        raise ValueError(f"Cannot assign '{key}' on '{entity.name}'")

    def _insert(self, plan: QueryPlan) -> CompiledStatement:
        entity = plan.entity
        columns = [self._assignment_column(entity, key) for key, _ in plan.values]
        params = tuple(self._write_value(entity, key, value) for key, value in plan.values)
        if columns:
            placeholders = ", ".join("?" for _ in columns)
            sql = f"INSERT INTO {entity.table_name} ({', '.join(columns)}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {entity.table_name} DEFAULT VALUES"
        return CompiledStatement(sql, params)

    def _update(self, plan: QueryPlan) -> CompiledStatement:
        entity = plan.entity
        if not plan.values:
            raise ValueError(f"Update of '{entity.name}' has no assignments")
        params: list[Any] = []
        assignments = []
        for key, value in plan.values:
            column = self._assignment_column(entity, key)
            if isinstance(value, Increment):
                assignments.append(f"{column} = {column} + ?")
                params.append(value.amount)
            else:
                assignments.append(f"{column} = ?")
                params.append(self._write_value(entity, key, value))
        sql = f"UPDATE {entity.table_name} AS t0 SET {', '.join(assignments)}"
        sql += self._write_filter(plan, params)
        return CompiledStatement(sql, tuple(params))

    def _delete(self, plan: QueryPlan) -> CompiledStatement:
        params: list[Any] = []
        sql = f"DELETE FROM {plan.entity.table_name} AS t0"
        sql += self._write_filter(plan, params)
        return CompiledStatement(sql, tuple(params))

    def _write_filter(self, plan: QueryPlan, params: list[Any]) -> str:
        """WHERE clause for UPDATE / DELETE; joined paths go through a subquery."""
        if plan.predicate is None:
            return ""
        scope = _Scope(self.registry, plan.entity)
        condition_sql = self._predicate_sql(scope, plan.predicate, params)
        if not scope.joins:
            return f" WHERE {condition_sql}"
        id_column = plan.entity.id.column_name
        return (
            f" WHERE {id_column} IN "
            f"(SELECT t0.{id_column} FROM {scope.from_sql()} WHERE {condition_sql})"
        )

    def _write_value(self, entity: EntityType, key: str, value: Any) -> Any:
        rel = entity.get_relationship(key)
        if rel is None or value is None:
            return value
        if isinstance(value, Ref):
            if value.key is not None or not value.resolved:
                return value.key
            value = value.value
        target = self.registry.resolve(rel.target)
        if isinstance(value, target.cls):
            return target.get_id(value)
        return value

    # -- DDL -----------------------------------------------------------------

    def ddl(self, entity: EntityType) -> list[str]:
        """CREATE TABLE (and foreign key index) statements for an entity."""
        id_field = entity.id
        lines = []
        for f in entity.fields:
            if f.name == entity.id_field:
                if id_field.kind == FieldKind.INTEGER:
                    lines.append(f"{f.column_name} INTEGER PRIMARY KEY AUTOINCREMENT")
                else:
                    lines.append(f"{f.column_name} {_COLUMN_TYPES[f.kind]} PRIMARY KEY")
                continue
            line = f"{f.column_name} {_COLUMN_TYPES[f.kind]}"
            if f.required:
                line += " NOT NULL"
            lines.append(line)

        indexes = []
        for rel in entity.many_to_one():
            target = self.registry.resolve(rel.target)
            lines.append(
                f"{rel.join_column} {_COLUMN_TYPES[target.id.kind]} "
                f"REFERENCES {target.table_name}({target.id.column_name})"
            )
            indexes.append(
                f"CREATE INDEX IF NOT EXISTS idx_{entity.table_name}_{rel.join_column} "
                f"ON {entity.table_name}({rel.join_column})"
            )

        body = ",\n    ".join(lines)
        create = f"CREATE TABLE IF NOT EXISTS {entity.table_name} (\n    {body}\n)"
        return [create] + indexes
