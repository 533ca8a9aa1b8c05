"""
Google Sheets v4 access shared by the appointment calendar and lead tracking.

The google-api-python-client is blocking; every call runs in a worker thread
so the event loop keeps serving other conversations.
"""

import asyncio
import json
import os
import re
import time
from datetime import date
from typing import Any, Callable, List, Optional

from leadflow.date_helpers import sheet_tab_name
from leadflow.logging_config import get_logger

logger = get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
TAB_CACHE_TTL_SECONDS = 5 * 60

_MONTH_TAB_RE = re.compile(r"^[A-ZÁÉÍÓÚÂÊÎÔÛÃÕÇ]+\s+\d{4}$")


class SheetsConfigError(Exception):
    """The service account credentials are missing or unreadable."""


def load_service_account_info(raw: str) -> dict:
    """Accept either a path to the service account file or the JSON itself."""
    if not raw:
        raise SheetsConfigError("GOOGLE_SERVICE_ACCOUNT_JSON is not configured")
    if os.path.exists(raw):
        with open(raw, encoding="utf-8") as fh:
            return json.load(fh)
    try:
        return json.loads(raw)
    except ValueError as e:
        raise SheetsConfigError("GOOGLE_SERVICE_ACCOUNT_JSON must be a valid file path or JSON string") from e


class SheetsClient:
    """Thin async wrapper over `spreadsheets()` of the Sheets v4 API."""

    def __init__(
        self,
        spreadsheet_id: str,
        service_account_json: str,
        service: Any = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.spreadsheet_id = spreadsheet_id
        self._service_account_json = service_account_json
        self._service = service
        self._monotonic = monotonic
        self._tab_cache: Optional[List[str]] = None
        self._tab_cache_at = 0.0

    def _get_service(self):
        if self._service is None:
            from google.oauth2.service_account import Credentials
            from googleapiclient.discovery import build

            creds = Credentials.from_service_account_info(
                load_service_account_info(self._service_account_json),
                scopes=SCOPES,
            )
            self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
            logger.info("sheets_client_initialized", spreadsheet_id=self.spreadsheet_id)
        return self._service

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    def _get_tabs_sync(self) -> List[str]:
        response = self._get_service().spreadsheets().get(spreadsheetId=self.spreadsheet_id).execute()
        return [sheet.get("properties", {}).get("title", "") for sheet in response.get("sheets", [])]

    async def get_tabs(self) -> List[str]:
        """Tab titles, cached for five minutes."""
        now = self._monotonic()
        if self._tab_cache is not None and now - self._tab_cache_at < TAB_CACHE_TTL_SECONDS:
            return self._tab_cache
        tabs = await self._run(self._get_tabs_sync)
        self._tab_cache = tabs
        self._tab_cache_at = now
        return tabs

    def _read_range_sync(self, cell_range: str) -> List[List[Any]]:
        response = (
            self._get_service()
            .spreadsheets()
            .values()
            .get(spreadsheetId=self.spreadsheet_id, range=cell_range)
            .execute()
        )
        return response.get("values", [])

    async def read_range(self, cell_range: str) -> List[List[Any]]:
        return await self._run(self._read_range_sync, cell_range)

    def _update_range_sync(self, cell_range: str, values: List[List[Any]]) -> None:
        (
            self._get_service()
            .spreadsheets()
            .values()
            .update(
                spreadsheetId=self.spreadsheet_id,
                range=cell_range,
                valueInputOption="USER_ENTERED",
                body={"values": values},
            )
            .execute()
        )

    async def update_range(self, cell_range: str, values: List[List[Any]]) -> None:
        await self._run(self._update_range_sync, cell_range, values)

    async def detect_month_tab(self, day: date) -> str:
        """
        Tab for `day`'s month ("OUTUBRO 2026"). Falls back to a tab containing
        the month name, then the last month-looking tab, then the first tab.
        """
        expected = sheet_tab_name(day)
        try:
            tabs = await self.get_tabs()
        except Exception as e:
            logger.error("sheet_tab_detection_failed", error=str(e))
            return expected

        for tab in tabs:
            if tab.upper().strip() == expected:
                return tab

        month = expected.split(" ")[0]
        for tab in tabs:
            if month in tab.upper():
                logger.info("sheet_tab_partial_match", tab=tab, expected=expected)
                return tab

        logger.warning("sheet_tab_not_found", expected=expected, available=tabs)
        month_tabs = [tab for tab in tabs if _MONTH_TAB_RE.match(tab.strip().upper())]
        if month_tabs:
            return month_tabs[-1]
        return tabs[0] if tabs else expected

    async def detect_tab_by_name(self, name: str) -> Optional[str]:
        """Case-insensitive exact, then substring, match of a tab title."""
        target = name.upper().strip()
        tabs = await self.get_tabs()
        for tab in tabs:
            if tab.upper().strip() == target:
                return tab
        for tab in tabs:
            if target in tab.upper():
                return tab
        logger.warning("sheet_tab_not_found", expected=name, available=tabs)
        return None
