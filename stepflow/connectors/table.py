from typing import Any, Dict, List, Literal, Optional, Protocol, Tuple
from copy import deepcopy
import logging

from pydantic import BaseModel, ValidationError

from stepflow.engine.errors import TableError
from stepflow.engine.models import RuntimeContext, StepNode, StepType

from .base import Connector

logger = logging.getLogger(__name__)


class TableFilter(BaseModel):
    column: str
    operator: Literal["eq", "neq", "gt", "lt", "contains"] = "eq"
    value: Any = None


class TableSort(BaseModel):
    column: str
    descending: bool = False


class QueryTableConfig(BaseModel):
    filter: Optional[TableFilter] = None
    sort: Optional[TableSort] = None
    limit: Optional[int] = None


class WriteTableConfig(BaseModel):
    mode: Literal["insert", "upsert"] = "insert"
    upsert_key: Optional[str] = None


def matches(row: Dict[str, Any], flt: TableFilter) -> bool:
    """Evaluate one filter against a row; rows missing the column never match."""
    if flt.column not in row:
        return False
    actual = row[flt.column]
    try:
        if flt.operator == "eq":
            return actual == flt.value
        if flt.operator == "neq":
            return actual != flt.value
        if flt.operator == "gt":
            return actual > flt.value
        if flt.operator == "lt":
            return actual < flt.value
        if flt.operator == "contains":
            return flt.value in actual
    except TypeError:
        return False
    return False


class TableStore(Protocol):
    """External tabular store the table connectors read and write."""

    async def query(
        self,
        table_id: str,
        filters: List[TableFilter],
        sort: Optional[TableSort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    async def insert(self, table_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def upsert(self, table_id: str, row: Dict[str, Any], key: str) -> Tuple[Dict[str, Any], bool]:
        """Returns the stored row and whether it was inserted (False when an existing row was updated)."""
        ...


class InMemoryTableStore:
    """Process-local TableStore, used for development and tests."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self._counters: Dict[str, int] = {}
        for table_id, rows in (tables or {}).items():
            self.create_table(table_id, rows)

    def create_table(self, table_id: str, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.tables[table_id] = []
        self._counters[table_id] = 0
        for row in rows or []:
            self._append(table_id, dict(row))

    def _rows(self, table_id: str) -> List[Dict[str, Any]]:
        if table_id not in self.tables:
            raise TableError(f"Table '{table_id}' not found", {"table_id": table_id})
        return self.tables[table_id]

    def _append(self, table_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        if "id" not in row:
            self._counters[table_id] += 1
            row["id"] = f"row_{self._counters[table_id]}"
        self.tables[table_id].append(row)
        return row

    async def query(
        self,
        table_id: str,
        filters: List[TableFilter],
        sort: Optional[TableSort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = [r for r in self._rows(table_id) if all(matches(r, f) for f in filters)]
        if sort:
            present = [r for r in rows if r.get(sort.column) is not None]
            absent = [r for r in rows if r.get(sort.column) is None]
            rows = sorted(present, key=lambda r: r[sort.column], reverse=sort.descending) + absent
        if limit is not None:
            rows = rows[:limit]
        return deepcopy(rows)

    async def insert(self, table_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._rows(table_id)
        return deepcopy(self._append(table_id, deepcopy(row)))

    async def upsert(self, table_id: str, row: Dict[str, Any], key: str) -> Tuple[Dict[str, Any], bool]:
        for existing in self._rows(table_id):
            if existing.get(key) == row.get(key):
                existing.update(deepcopy(row))
                return deepcopy(existing), False
        return deepcopy(self._append(table_id, deepcopy(row))), True


class _TableConnector(Connector):
    """Shared table binding resolution for the query and write variants."""

    def __init__(self, store: TableStore):
        self.store = store

    def _table_id(self, node: StepNode, context: RuntimeContext) -> str:
        table_id = context.table_bindings.get(node.table_ref) if node.table_ref else None
        if not table_id:
            raise TableError(f"No table binding for: {node.table_ref}", {"table_ref": node.table_ref})
        return table_id


class TableQueryConnector(_TableConnector):
    """Reads rows from the bound table. Scalar input fields act as equality filters."""

    step_type = StepType.TABLE_QUERY

    async def execute(self, node: StepNode, input: Any, context: RuntimeContext) -> Any:
        table_id = self._table_id(node, context)
        try:
            config = QueryTableConfig(**node.config)
        except ValidationError as e:
            raise TableError(f"Invalid query config for step '{node.id}': {e}", {"step_id": node.id})

        filters = [config.filter] if config.filter else []
        if isinstance(input, dict):
            filters += [
                TableFilter(column=column, value=value)
                for column, value in input.items()
                if not isinstance(value, (dict, list))
            ]

        rows = await self.store.query(table_id, filters, sort=config.sort, limit=config.limit)
        logger.debug(f"Query on {table_id} returned {len(rows)} rows")
        return {"rows": rows, "count": len(rows)}


class TableWriteConnector(_TableConnector):
    """Inserts or upserts the step input as one row of the bound table."""

    step_type = StepType.TABLE_WRITE

    async def execute(self, node: StepNode, input: Any, context: RuntimeContext) -> Any:
        table_id = self._table_id(node, context)
        try:
            config = WriteTableConfig(**node.config)
        except ValidationError as e:
            raise TableError(f"Invalid write config for step '{node.id}': {e}", {"step_id": node.id})
        if not isinstance(input, dict):
            raise TableError(f"Step '{node.id}' can only write an object row", {"step_id": node.id})

        if config.mode == "upsert":
            if not config.upsert_key or config.upsert_key not in input:
                raise TableError(
                    f"Upsert on step '{node.id}' needs key '{config.upsert_key}' in its input",
                    {"step_id": node.id, "upsert_key": config.upsert_key},
                )
            row, inserted = await self.store.upsert(table_id, input, config.upsert_key)
        else:
            row, inserted = await self.store.insert(table_id, input), True

        return {"inserted": inserted, "id": row.get("id"), "row": row}
