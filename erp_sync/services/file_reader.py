"""
Bulk File Reader Module
=======================
Streams large export files out of the ERP file cabinet through a RESTlet
that returns one page of lines per call.

PAGE CONTRACT:
-------------
GET {restlet_url}?script=&deploy=&id=&lineStart=&maxLines=
-> {"ok": true, "data": "<lines>", "linesReturned": N, "done": bool}

Paging stops on done=true or a short page. Non-empty page bodies are
joined with newlines; multi-part files are concatenated in order the same
way. A byte-order mark is stripped only from the very start of the result.
"""

from typing import Any, Dict, Iterable, List, Optional

from ..config import config
from ..exceptions import BulkFileFetchFailed
from ..utils.helpers import parse_jsonl, strip_bom
from ..utils.logger import logger
from .erp_client import ErpClient, erp_client


class BulkFileReader:
    """Paged reader for exported files"""

    def __init__(
        self,
        client: Optional[ErpClient] = None,
        restlet_url: Optional[str] = None,
        script: Optional[str] = None,
        deploy: Optional[str] = None,
        page_lines: Optional[int] = None,
    ):
        self.client = client or erp_client
        self.restlet_url = restlet_url or config.erp.get_restlet_url()
        self.script = script or config.erp.restlet_script
        self.deploy = deploy or config.erp.restlet_deploy
        self.page_lines = page_lines or config.erp.file_page_lines

    async def _fetch_page(self, file_id: int, line_start: int) -> Dict[str, Any]:
        response = await self.client.send(
            "GET",
            self.restlet_url,
            tag=f"file:{file_id}",
            params={
                "script": self.script,
                "deploy": self.deploy,
                "id": file_id,
                "lineStart": line_start,
                "maxLines": self.page_lines,
            },
        )
        if not response.is_success:
            raise BulkFileFetchFailed(file_id, response.status_code, response.text)
        try:
            body = response.json()
        except ValueError:
            raise BulkFileFetchFailed(file_id, response.status_code, response.text)
        if not isinstance(body, dict) or not body.get("ok"):
            raise BulkFileFetchFailed(file_id, response.status_code, response.text)
        return body

    async def read_file(self, file_id: int) -> str:
        """Read one file to the end"""
        pages: List[str] = []
        line_start = 0

        while True:
            body = await self._fetch_page(file_id, line_start)
            text = str(body.get("data") or "")
            if text:
                pages.append(text)

            returned = int(body.get("linesReturned") or 0)
            if body.get("done") or returned < self.page_lines:
                break
            line_start += returned

        logger.debug(f"File {file_id}: {len(pages)} pages, {line_start} lines before last page")
        return "\n".join(pages)

    async def read(self, file_ids: Iterable[int]) -> str:
        """Read parts in order and concatenate them"""
        parts = []
        for file_id in file_ids:
            text = await self.read_file(file_id)
            if text:
                parts.append(text)
        return strip_bom("\n".join(parts))

    async def read_records(self, file_ids: Iterable[int]) -> List[Dict[str, Any]]:
        """Read parts and parse them as JSON lines"""
        return parse_jsonl(await self.read(file_ids))


# Global reader instance
bulk_file_reader = BulkFileReader()
