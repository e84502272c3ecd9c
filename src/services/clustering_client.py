"""Client for the external DBSCAN clustering service."""

import os
from typing import Any, BinaryIO, Dict, List, Optional, Union

import requests

from src.config import config
from src.errors import ClusteringServiceError, ConfigurationError, ServiceUnreachableError, ValidationError
from src.logger import app_logger as logger
from src.models import SHEET_OPTIONS, ClusteringRow

ALLOWED_EXTENSIONS = (".xlsx", ".xls")
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def validate_upload(filename: Optional[str], sheet_name: Optional[str]) -> None:
    """Reject unsupported files and sheets before anything is sent."""
    if not filename:
        raise ValidationError("Pilih file Excel terlebih dahulu", field="file")
    if not filename.lower().endswith(ALLOWED_EXTENSIONS):
        raise ValidationError("Hanya file Excel (.xlsx, .xls) yang diperbolehkan", field="file")
    if sheet_name not in SHEET_OPTIONS:
        raise ValidationError(
            f"Sheet harus salah satu dari: {', '.join(SHEET_OPTIONS)}",
            field="sheet_name"
        )


class ClusteringClient:
    """Uploads an attendance workbook and returns typed clustering rows."""

    def __init__(self, api_url: Optional[str], timeout: int = 120) -> None:
        self.api_url = api_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg=config) -> "ClusteringClient":
        return cls(cfg.clustering_api_url, timeout=cfg.clustering_api_timeout)

    def process_file(
        self,
        file: Union[bytes, BinaryIO],
        filename: str,
        sheet_name: str
    ) -> List[ClusteringRow]:
        """POST the workbook as multipart ``file`` + ``sheet_name``.

        Raises ConfigurationError when no URL is set, ServiceUnreachableError
        on network failure and ClusteringServiceError on a non-2xx answer.
        """
        if not self.api_url:
            raise ConfigurationError(
                "CLUSTERING_API_URL",
                "Clustering API URL not configured. Please set CLUSTERING_API_URL in your environment variables."
            )
        validate_upload(filename, sheet_name)

        content_type = XLSX_CONTENT_TYPE if filename.lower().endswith(".xlsx") else "application/vnd.ms-excel"
        files = {"file": (os.path.basename(filename), file, content_type)}
        try:
            response = requests.post(
                self.api_url,
                files=files,
                data={"sheet_name": sheet_name},
                timeout=self.timeout
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            logger.error(f"Clustering service unreachable at {self.api_url}: {exc}")
            raise ServiceUnreachableError(
                "clustering",
                "Cannot connect to clustering service. Please ensure the clustering API server is running."
            ) from exc

        if not (200 <= response.status_code < 300):
            raise ClusteringServiceError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise ClusteringServiceError(response.status_code, "Response is not valid JSON") from exc

        rows = self._extract_rows(payload)
        logger.info(f"Clustering service returned {len(rows)} rows for {sheet_name}")
        return [ClusteringRow.from_api(row) for row in rows]

    @staticmethod
    def _extract_rows(payload: Any) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            payload = payload.get("data", payload.get("results", []))
        if not isinstance(payload, list):
            raise ClusteringServiceError(200, "Expected a JSON array of rows")
        return [row for row in payload if isinstance(row, dict)]
