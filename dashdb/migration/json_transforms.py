"""
JSON payload transforms used by data-rewriting migrations.

Stored dashboard payloads come in two shapes:

- WidgetArrayV1: a bare JSON array of widget descriptors
  (dashboard_templates.widgets, dashboard_backups.mobile_widgets, ...)
- DashboardConfigV1: an object holding such an array under "widgets"
  (user_preferences.dashboard_config)

Each transform parses the raw column into one of these variants, edits
the widgets, and re-serializes. Malformed input never raises: the
original text comes back untouched together with a DataTransformWarning.
"""

import json
import sqlite3
import logging
from dataclasses import dataclass
from numbers import Number
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .base_migration import DataTransformWarning, MigrationReport

logger = logging.getLogger(__name__)

# Paths (relative to a widget descriptor) where a grid height may live
HEIGHT_PATHS = (
    ("h",),
    ("layouts", "lg", "h"),
    ("layouts", "sm", "h"),
    ("layout", "h"),
)


@dataclass
class WidgetArrayV1:
    widgets: List[Any]


@dataclass
class DashboardConfigV1:
    document: Dict[str, Any]

    @property
    def widgets(self) -> List[Any]:
        return self.document["widgets"]


@dataclass
class UnrecognizedPayload:
    document: Any


WidgetPayload = Union[WidgetArrayV1, DashboardConfigV1, UnrecognizedPayload]


@dataclass
class TransformOutcome:
    """
    Result of transforming one stored value.

    value is what should be stored afterwards; changed is False whenever
    the original text must be kept byte-identical; warning is set when
    the row was skipped because it could not be parsed.
    """

    value: Optional[str]
    changed: bool = False
    warning: Optional[DataTransformWarning] = None

    @property
    def skipped(self) -> bool:
        return self.warning is not None


def parse_widget_payload(document: Any) -> WidgetPayload:
    """Classify an already-decoded JSON document."""
    if isinstance(document, list):
        return WidgetArrayV1(widgets=document)
    if isinstance(document, dict) and isinstance(document.get("widgets"), list):
        return DashboardConfigV1(document=document)
    return UnrecognizedPayload(document=document)


def serialize(payload: WidgetPayload) -> str:
    if isinstance(payload, WidgetArrayV1):
        document = payload.widgets
    else:
        document = payload.document
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False)


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _scale(value, factor):
    scaled = value * factor
    if isinstance(value, int) and isinstance(scaled, float) and scaled.is_integer():
        return int(scaled)
    return scaled


def scale_widget(widget: Any, factor: Number) -> bool:
    """
    Scale every numeric height of one widget descriptor in place.

    Returns:
        True if at least one height was scaled
    """
    if not isinstance(widget, dict):
        return False

    scaled_any = False
    for path in HEIGHT_PATHS:
        parent = widget
        for part in path[:-1]:
            parent = parent.get(part) if isinstance(parent, dict) else None
        if not isinstance(parent, dict):
            continue
        leaf = path[-1]
        if _is_number(parent.get(leaf)):
            parent[leaf] = _scale(parent[leaf], factor)
            scaled_any = True
    return scaled_any


def remap_widget(widget: Any, id_map: Dict[str, str]) -> bool:
    """
    Rewrite integration instance references inside one widget's config.

    Handles config.integrationId and every entry of config.integrationIds.
    """
    if not isinstance(widget, dict) or not isinstance(widget.get("config"), dict):
        return False

    config = widget["config"]
    changed = False

    current = config.get("integrationId")
    if isinstance(current, str) and current in id_map:
        config["integrationId"] = id_map[current]
        changed = True

    ids = config.get("integrationIds")
    if isinstance(ids, list):
        remapped = [id_map.get(i, i) if isinstance(i, str) else i for i in ids]
        if remapped != ids:
            config["integrationIds"] = remapped
            changed = True

    return changed


def transform_widgets(raw_json: Optional[str],
                      edit: Callable[[Any], bool]) -> TransformOutcome:
    """
    Parse a stored payload, apply ``edit`` to every widget, re-serialize.

    Args:
        raw_json: Column value as stored (may be None)
        edit: Mutates one widget in place, returns True if it changed it

    Returns:
        TransformOutcome; the original text is kept whenever nothing changed
    """
    if not raw_json:
        return TransformOutcome(value=raw_json)

    try:
        document = json.loads(raw_json)
    except (ValueError, TypeError, RecursionError) as e:
        return TransformOutcome(
            value=raw_json,
            warning=DataTransformWarning(f"invalid JSON: {e}")
        )

    payload = parse_widget_payload(document)
    if isinstance(payload, UnrecognizedPayload):
        return TransformOutcome(value=raw_json)

    changed = False
    for widget in payload.widgets:
        if edit(widget):
            changed = True

    if not changed:
        return TransformOutcome(value=raw_json)
    return TransformOutcome(value=serialize(payload), changed=True)


def scale_widget_heights(raw_json: Optional[str], factor: Number) -> TransformOutcome:
    """
    Multiply every widget height in a stored payload by ``factor``.

    Pure: keeps no state, so callers must make sure a row is scaled only
    once per migration.
    """
    return transform_widgets(raw_json, lambda widget: scale_widget(widget, factor))


def remap_widget_integration_ids(raw_json: Optional[str],
                                 id_map: Dict[str, str]) -> TransformOutcome:
    """Rewrite integration instance ids referenced by widgets in a stored payload."""
    if not id_map:
        return TransformOutcome(value=raw_json)
    return transform_widgets(raw_json, lambda widget: remap_widget(widget, id_map))


def rewrite_json_columns(conn: sqlite3.Connection, table: str, key_column: str,
                         columns: Sequence[str],
                         transform: Callable[[Optional[str]], TransformOutcome],
                         report: Optional[MigrationReport] = None,
                         atomic: bool = True) -> int:
    """
    Apply a per-value transform to JSON columns of every row of a table.

    The whole result set is read into memory first; changed rows are then
    written back one UPDATE at a time inside a single transaction scoped
    to this batch. Rows with unparseable values keep those values and are
    recorded on the report as skipped. With atomic=False the caller owns
    the transaction (several tables rewritten together with a marker row).

    Args:
        conn: Database connection
        table: Table to rewrite
        key_column: Primary key column used to address rows
        columns: JSON columns to transform
        transform: Function from stored text to TransformOutcome
        report: Where skipped rows and counts are recorded
        atomic: Wrap the updates in their own transaction

    Returns:
        Number of rows rewritten
    """
    column_list = ", ".join(columns)
    rows = conn.execute(f"SELECT {key_column}, {column_list} FROM {table}").fetchall()

    updates = []
    skipped = 0
    for row in rows:
        key, values = row[0], row[1:]
        new_values = []
        row_changed = False
        for column, value in zip(columns, values):
            outcome = transform(value)
            if outcome.skipped:
                skipped += 1
                if report is not None:
                    report.skip(f"{table}.{column}", key, outcome.warning)
                logger.debug(f"Skipping {table}.{column} key={key}: {outcome.warning}")
            if outcome.changed:
                row_changed = True
                new_values.append(outcome.value)
            else:
                new_values.append(value)
        if row_changed:
            updates.append((*new_values, key))

    assignments = ", ".join(f"{column} = ?" for column in columns)
    statement = f"UPDATE {table} SET {assignments} WHERE {key_column} = ?"
    if atomic:
        with conn:
            conn.executemany(statement, updates)
    else:
        conn.executemany(statement, updates)

    if report is not None:
        report.count(f"{table}.rewritten", len(updates))
    logger.debug(f"{table}: migrated={len(updates)} skipped={skipped} total={len(rows)}")
    return len(updates)
