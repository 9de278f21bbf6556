"""Queries against the ICAT that decide what phymv has to move.

Both queries run through ``psql`` with the resource and collection names
passed as psql variables, so psql does the quoting.  Listing output uses NUL
as record separator because iRODS paths may contain newlines.
"""
import logging
import subprocess
from dataclasses import dataclass

import utils

LOG = logging.getLogger("phymv.inventory")

_BASE_COND_ALL = "TRUE"
_BASE_COND_COLL = "(c.coll_name = :'coll' OR c.coll_name LIKE :'coll_like' ESCAPE '\\')"

_LIST_SQL = """
SELECT d.data_size, c.coll_name || '/' || d.data_name
  FROM r_data_main AS d JOIN r_coll_main AS c ON c.coll_id = d.coll_id
  WHERE d.data_id = ANY(ARRAY(
      SELECT data_id FROM r_data_main WHERE resc_name = :'src'
      EXCEPT SELECT data_id FROM r_data_main WHERE resc_name = :'dest'))
    AND d.resc_name = :'src'
    AND {base_cond};
"""

_UNMOVABLE_SQL = """
SELECT COUNT(d.data_id)
  FROM r_data_main AS d JOIN r_coll_main AS c ON c.coll_id = d.coll_id
  WHERE d.data_id = ANY(ARRAY(
      SELECT data_id FROM r_data_main WHERE resc_name = :'src'
      INTERSECT SELECT data_id FROM r_data_main WHERE resc_name = :'dest'))
    AND d.resc_name = :'src'
    AND {base_cond};
"""


def like_prefix(collection: str) -> str:
    """LIKE pattern matching everything below a collection, wildcards escaped."""
    escaped = collection.rstrip("/").replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "/%"


class InventoryError(RuntimeError):
    pass


@dataclass(frozen=True)
class WorkItem:
    size_bytes: int
    path: str


def parse_records(text: str) -> list[WorkItem]:
    """Turn ``<size> <path>\\0...`` psql output into work items."""
    items = []
    for record in text.split("\0"):
        if record.endswith("\n"):
            record = record[:-1]
        if not record:
            continue
        size, sep, path = record.partition(" ")
        if not sep or not path:
            raise InventoryError(f"malformed inventory record: {record!r}")
        try:
            size_bytes = int(size)
        except ValueError:
            raise InventoryError(f"malformed data size in inventory record: {record!r}") from None
        if size_bytes < 0:
            raise InventoryError(f"negative data size for {path}")
        items.append(WorkItem(size_bytes, path))
    return items


class IcatInventory:
    def __init__(self, settings):
        self.settings = settings

    def _base_cond(self, collection):
        return _BASE_COND_COLL if collection else _BASE_COND_ALL

    def _psql(self, sql, src, dest, collection, listing=False):
        s = self.settings
        cmd = [s.psql, "-X", "--no-align", "--tuples-only", "--quiet",
               "--set", "ON_ERROR_STOP=1",
               "--host", s.db_host, "--port", str(s.db_port),
               "--username", s.db_user, "--dbname", s.db_name,
               "--set", f"src={src}", "--set", f"dest={dest}"]
        if collection:
            cmd += ["--set", f"coll={collection}",
                    "--set", f"coll_like={like_prefix(collection)}"]
        if listing:
            cmd += ["--record-separator-zero", "--field-separator", " "]
        try:
            result = utils.run_command(cmd, input_text=sql.format(base_cond=self._base_cond(collection)))
        except (OSError, subprocess.CalledProcessError) as exc:
            raise InventoryError(f"ICAT query on {s.db_host}:{s.db_port} failed: {exc}") from exc
        return result.stdout

    def list_movable(self, src: str, dest: str, collection: str | None = None) -> list[WorkItem]:
        out = self._psql(_LIST_SQL, src, dest, collection, listing=True)
        items = parse_records(out)
        LOG.debug("%d data objects on %s without a replica on %s", len(items), src, dest)
        return items

    def count_unmovable(self, src: str, dest: str, collection: str | None = None) -> int:
        out = self._psql(_UNMOVABLE_SQL, src, dest, collection).strip()
        try:
            return int(out or 0)
        except ValueError:
            raise InventoryError(f"unexpected count from ICAT: {out!r}") from None
