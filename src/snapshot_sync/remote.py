"""
Remote tabular store contract and local implementations.

The publisher talks to any object satisfying `RemoteStore`: a container (one
spreadsheet, one database) holding named structures (sheets, tables) addressed
with A1-style ranges:

    A:Z     columns A..Z, every row
    B:B     a single column
    A17     anchor cell, row 17 column A (writes extend right and down)
    A1:Z50  a bounded block

`MemoryStore` keeps everything in process and is what the tests run against.
`JsonFileStore` is a MemoryStore persisted to one JSON file after every
mutating call, for offline runs and local mirrors.
"""

from __future__ import annotations

import copy
import json
import re
from pathlib import Path
from typing import Dict, List, Literal, Optional, Protocol, Sequence, Tuple, Union, runtime_checkable

from loguru import logger
from pydantic import BaseModel

from .utils import atomic_write_json

Rows = List[List[str]]


class Structure(BaseModel):
    id: str
    name: str


class UpdateResult(BaseModel):
    updated_rows: int
    updated_range: Optional[str] = None


class AddStructure(BaseModel):
    kind: Literal["add"] = "add"
    name: str


class DeleteStructure(BaseModel):
    kind: Literal["delete"] = "delete"
    structure_id: str


class RenameStructure(BaseModel):
    kind: Literal["rename"] = "rename"
    structure_id: str
    name: str


StructuralOp = Union[AddStructure, DeleteStructure, RenameStructure]


@runtime_checkable
class RemoteStore(Protocol):
    """What the publisher needs from a remote store. All calls are awaited one at a time."""

    container_id: str

    async def get_range(self, target: str, cell_range: str) -> Rows: ...

    async def update_range(self, target: str, cell_range: str, rows: Sequence[Sequence[str]]) -> UpdateResult: ...

    async def clear_range(self, target: str, cell_range: str) -> None: ...

    async def list_structures(self) -> List[Structure]: ...

    async def batch_structural_update(self, ops: Sequence[StructuralOp]) -> List[Optional[Structure]]: ...


# --------------------------- A1 helpers

_RANGE = re.compile(r"^([A-Z]+)(\d+)?(?::([A-Z]+)(\d+)?)?$")


def column_letter(index: int) -> str:
    """0 -> A, 25 -> Z, 26 -> AA."""
    if index < 0:
        raise ValueError("column index must be >= 0")
    out = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        out = chr(ord("A") + rem) + out
    return out


def column_index(letters: str) -> int:
    n = 0
    for ch in letters:
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


def anchor(row_offset: int, column: int = 0) -> str:
    """A1 anchor for a 0-based row offset."""
    return f"{column_letter(column)}{row_offset + 1}"


def parse_range(cell_range: str) -> Tuple[int, Optional[int], int, Optional[int]]:
    """(start_row, end_row, start_col, end_col), 0-based, ends inclusive or None for open."""
    m = _RANGE.match(cell_range.strip().upper())
    if not m:
        raise ValueError(f"Unable to parse range: {cell_range}")
    c1, r1, c2, r2 = m.groups()
    start_col = column_index(c1)
    start_row = int(r1) - 1 if r1 else 0
    if c2 is None:
        # single anchor cell: open towards the bottom-right
        return start_row, None, start_col, None
    end_col = column_index(c2)
    end_row = int(r2) - 1 if r2 else None
    if end_col < start_col or (end_row is not None and end_row < start_row):
        raise ValueError(f"Inverted range: {cell_range}")
    return start_row, end_row, start_col, end_col


def _trim(rows: Rows) -> Rows:
    out = []
    for row in rows:
        row = list(row)
        while row and row[-1] == "":
            row.pop()
        out.append(row)
    while out and not out[-1]:
        out.pop()
    return out


class MemoryStore:
    """
    In-process RemoteStore.

    Structural batches are all-or-nothing: they are applied to a copy and only
    swapped in when every operation succeeded.
    """

    def __init__(self, container_id: str = "memory", structures: Optional[Dict[str, Rows]] = None):
        self.container_id = container_id
        self._structures: Dict[str, dict] = {}
        self._next_id = 1
        self.calls: List[str] = []
        for name, rows in (structures or {}).items():
            self._add(self._structures, name, rows)

    # --------------------------- inspection helpers (not part of the contract)

    def rows_of(self, name: str) -> Rows:
        return copy.deepcopy(self._find(name)["rows"])

    def has(self, name: str) -> bool:
        return any(s["name"] == name for s in self._structures.values())

    def names(self) -> List[str]:
        return [s["name"] for s in self._structures.values()]

    # --------------------------- contract

    async def get_range(self, target: str, cell_range: str) -> Rows:
        self.calls.append("get_range")
        rows = self._find(target)["rows"]
        r0, r1, c0, c1 = parse_range(cell_range)
        selected = rows[r0 : None if r1 is None else r1 + 1]
        return _trim([list(r[c0 : None if c1 is None else c1 + 1]) for r in selected])

    async def update_range(self, target: str, cell_range: str, rows: Sequence[Sequence[str]]) -> UpdateResult:
        self.calls.append("update_range")
        sheet = self._find(target)
        r0, _, c0, _ = parse_range(cell_range)
        data = sheet["rows"]
        for i, row in enumerate(rows):
            idx = r0 + i
            while len(data) <= idx:
                data.append([])
            current = data[idx]
            needed = c0 + len(row)
            if len(current) < needed:
                current.extend([""] * (needed - len(current)))
            current[c0:needed] = ["" if v is None else str(v) for v in row]
        sheet["rows"] = _trim(data)
        self._persist()
        width = max((len(r) for r in rows), default=1)
        end = f"{column_letter(c0 + max(width, 1) - 1)}{r0 + max(len(rows), 1)}"
        return UpdateResult(updated_rows=len(rows), updated_range=f"{target}!{anchor(r0, c0)}:{end}")

    async def clear_range(self, target: str, cell_range: str) -> None:
        self.calls.append("clear_range")
        sheet = self._find(target)
        r0, r1, c0, c1 = parse_range(cell_range)
        data = sheet["rows"]
        stop = len(data) if r1 is None else min(len(data), r1 + 1)
        for idx in range(r0, stop):
            row = data[idx]
            end = len(row) if c1 is None else min(len(row), c1 + 1)
            for c in range(c0, end):
                row[c] = ""
        sheet["rows"] = _trim(data)
        self._persist()

    async def list_structures(self) -> List[Structure]:
        self.calls.append("list_structures")
        return [Structure(id=sid, name=s["name"]) for sid, s in self._structures.items()]

    async def batch_structural_update(self, ops: Sequence[StructuralOp]) -> List[Optional[Structure]]:
        self.calls.append("batch_structural_update")
        staged = copy.deepcopy(self._structures)
        next_id = self._next_id
        replies: List[Optional[Structure]] = []
        for op in ops:
            if isinstance(op, AddStructure):
                if any(s["name"] == op.name for s in staged.values()):
                    raise ValueError(f"A structure named {op.name!r} already exists")
                sid = str(next_id)
                next_id += 1
                staged[sid] = {"name": op.name, "rows": []}
                replies.append(Structure(id=sid, name=op.name))
            elif isinstance(op, DeleteStructure):
                if op.structure_id not in staged:
                    raise ValueError(f"No structure with id {op.structure_id}")
                del staged[op.structure_id]
                replies.append(None)
            elif isinstance(op, RenameStructure):
                if op.structure_id not in staged:
                    raise ValueError(f"No structure with id {op.structure_id}")
                if any(
                    s["name"] == op.name and sid != op.structure_id for sid, s in staged.items()
                ):
                    raise ValueError(f"A structure named {op.name!r} already exists")
                staged[op.structure_id]["name"] = op.name
                replies.append(None)
            else:
                raise ValueError(f"Unsupported structural op: {op!r}")
        self._structures = staged
        self._next_id = next_id
        self._persist()
        return replies

    # --------------------------- internals

    def _add(self, structures: Dict[str, dict], name: str, rows: Rows) -> str:
        sid = str(self._next_id)
        self._next_id += 1
        structures[sid] = {"name": name, "rows": _trim([[str(v) for v in r] for r in rows])}
        return sid

    def _find(self, name: str) -> dict:
        for s in self._structures.values():
            if s["name"] == name:
                return s
        raise LookupError(f"Unable to parse range: {name} (no such structure)")

    def _persist(self) -> None:
        """Hook for subclasses that keep the store on disk."""


class JsonFileStore(MemoryStore):
    """MemoryStore persisted to a JSON file after every mutating call."""

    def __init__(self, path: Union[str, Path], container_id: Optional[str] = None):
        self.path = Path(path)
        super().__init__(container_id=container_id or self.path.stem)
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            self.container_id = container_id or doc.get("container_id", self.container_id)
            self._structures = {
                str(s["id"]): {"name": s["name"], "rows": s.get("rows", [])}
                for s in doc.get("structures", [])
            }
            self._next_id = int(doc.get("next_id", len(self._structures) + 1))
            logger.debug(f"Loaded {len(self._structures)} structures from {self.path}")

    def _persist(self) -> None:
        atomic_write_json(
            self.path,
            {
                "container_id": self.container_id,
                "next_id": self._next_id,
                "structures": [
                    {"id": sid, "name": s["name"], "rows": s["rows"]}
                    for sid, s in self._structures.items()
                ],
            },
        )
