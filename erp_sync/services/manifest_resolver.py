"""
Manifest Resolver Module
Locates the newest manifest by name inside a folder, reads it through the
bulk file reader, and normalizes each dataset to an ordered list of parts.

A dataset entry is either a single file {id, name, rows} or a split file
{total_rows, parts: [{id, name, rows}, ...]}.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..config import config
from ..exceptions import InvalidManifest, ManifestNotFound
from ..utils.helpers import escape_sql_string, to_int_or_none
from ..utils.logger import logger
from .file_reader import BulkFileReader, bulk_file_reader
from .query_executor import QueryExecutor, query_executor


@dataclass
class ManifestPart:
    file_id: int
    name: Optional[str] = None
    rows: Optional[int] = None


@dataclass
class Manifest:
    name: str
    file_id: int
    generated_at: Optional[str] = None
    datasets: Dict[str, List[ManifestPart]] = field(default_factory=dict)

    def parts(self, dataset: str) -> List[ManifestPart]:
        return self.datasets.get(dataset, [])

    def file_ids(self, dataset: str) -> List[int]:
        return [part.file_id for part in self.parts(dataset)]

    def rows_reported(self, dataset: str) -> Optional[int]:
        counts = [part.rows for part in self.parts(dataset) if part.rows is not None]
        return sum(counts) if counts else None


def normalize_parts(entry: Any) -> List[ManifestPart]:
    """Turn either dataset shape into a list of parts; unusable entries give []"""
    if not isinstance(entry, dict):
        return []
    raw_parts = entry.get("parts") if isinstance(entry.get("parts"), list) else [entry]
    parts = []
    for raw in raw_parts:
        if not isinstance(raw, dict):
            continue
        file_id = to_int_or_none(raw.get("id"))
        if not file_id:
            continue
        parts.append(ManifestPart(file_id=file_id, name=raw.get("name"), rows=to_int_or_none(raw.get("rows"))))
    return parts


class ManifestResolver:
    """Finds and parses export manifests"""

    def __init__(
        self,
        executor: Optional[QueryExecutor] = None,
        reader: Optional[BulkFileReader] = None,
        folder_id: Optional[int] = None,
    ):
        self.executor = executor or query_executor
        self.reader = reader or bulk_file_reader
        self.folder_id = folder_id or config.erp.manifest_folder_id

    async def locate(self, name: str, folder_id: Optional[int] = None) -> int:
        """Id of the newest file with this name in the folder"""
        folder = int(folder_id or self.folder_id)
        rows = await self.executor.execute(
            f"""
            SELECT id
            FROM file
            WHERE name = '{escape_sql_string(name)}'
              AND folder = {folder}
            ORDER BY id DESC
            FETCH NEXT 1 ROWS ONLY
            """,
            tag="manifest.locate",
        )
        file_id = to_int_or_none(rows[0].get("id")) if rows else None
        if not file_id:
            raise ManifestNotFound(name, folder)
        return file_id

    async def resolve(
        self,
        name: str,
        required: Iterable[str] = (),
        folder_id: Optional[int] = None,
    ) -> Manifest:
        """Locate, read and validate a manifest"""
        file_id = await self.locate(name, folder_id)
        text = await self.reader.read([file_id])
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise InvalidManifest(name, reason=f"unparseable JSON ({e})")
        if not isinstance(payload, dict):
            raise InvalidManifest(name, reason="manifest is not an object")

        files = payload.get("files") if isinstance(payload.get("files"), dict) else {}
        manifest = Manifest(
            name=name,
            file_id=file_id,
            generated_at=payload.get("generated_at"),
            datasets={dataset: normalize_parts(entry) for dataset, entry in files.items()},
        )

        missing = [dataset for dataset in required if not manifest.parts(dataset)]
        if missing:
            raise InvalidManifest(name, missing)

        logger.info(
            f"Manifest {name} (file {file_id}, generated {manifest.generated_at}): "
            + ", ".join(f"{k}={len(v)} part(s)" for k, v in manifest.datasets.items())
        )
        return manifest


# Global resolver instance
manifest_resolver = ManifestResolver()
