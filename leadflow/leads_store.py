"""
Lead tracking: one row per lead with the funnel outcome columns
(qualified, booked, sold) the sales team reads.
"""

import re
from datetime import datetime
from typing import Callable, Optional

from leadflow.db_models import Intention
from leadflow.logging_config import get_logger
from leadflow.models import LeadUpdate
from leadflow.sheets_client import SheetsClient

logger = get_logger(__name__)

LEADS_TAB_NAME = "LEADS"

_BUSCA = {
    Intention.SELL: "VENDA",
    Intention.BUY: "COMPRA",
    Intention.TRADE: "TROCA",
    Intention.APPRAISE: "AVALIAÇÃO",
}


def intention_to_busca(intention: Optional[Intention]) -> str:
    """Value of the BUSCA column for an intention."""
    if not intention:
        return ""
    return _BUSCA.get(Intention(intention), "")


def _digits(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def phones_match(a: str, b: str) -> bool:
    """Same number, tolerating a missing country or area prefix on either side."""
    a, b = _digits(a), _digits(b)
    if not a or not b:
        return False
    return a == b or a.endswith(b) or b.endswith(a)


class LeadTracker:
    """Interface of the lead-tracking sheet."""

    async def register_lead(self, phone: str, responsible: str) -> None:
        raise NotImplementedError

    async def update_lead(self, phone: str, update: LeadUpdate) -> bool:
        raise NotImplementedError


class InMemoryLeadTracker(LeadTracker):
    """Lead rows kept in process memory, for development and tests."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.rows: list[dict] = []
        self.clock = clock

    def find(self, phone: str) -> Optional[dict]:
        for row in reversed(self.rows):
            if phones_match(row["phone"], phone):
                return row
        return None

    async def register_lead(self, phone: str, responsible: str) -> None:
        self.rows.append(
            {
                "date": self.clock().strftime("%d/%m/%Y"),
                "phone": phone,
                "customer_name": "",
                "vehicle": "",
                "busca": "",
                "qualificado": "",
                "agendou": "",
                "vendeu": ".",
                "responsible": responsible,
            }
        )

    async def update_lead(self, phone: str, update: LeadUpdate) -> bool:
        row = self.find(phone)
        if row is None:
            return False
        for key, value in update.model_dump().items():
            if value:
                row[key] = value
        return True


class SheetsLeadTracker(LeadTracker):
    """
    The LEADS tab. Row 1 is a title, row 2 the headers, data from row 3:
    A (seq) | B DATA | C NOME | D CARRO | E TELEFONE | F BUSCA | G QUALIFICADO
    | H AGENDOU | I VENDEU | J RESPONSAVEL
    """

    FIRST_DATA_ROW = 3
    COL_PHONE = 4

    def __init__(self, client: SheetsClient, clock: Callable[[], datetime] = datetime.now):
        self.client = client
        self.clock = clock

    async def _tab(self) -> Optional[str]:
        tab = await self.client.detect_tab_by_name(LEADS_TAB_NAME)
        if not tab:
            logger.warning("leads_tab_not_found")
        return tab

    async def register_lead(self, phone: str, responsible: str) -> None:
        tab = await self._tab()
        if not tab:
            return

        rows = await self.client.read_range(f"'{tab}'!A{self.FIRST_DATA_ROW}:Z")
        last_used = self.FIRST_DATA_ROW - 1
        for index in range(len(rows) - 1, -1, -1):
            if any(str(cell).strip() for cell in rows[index] if cell is not None):
                last_used = index + self.FIRST_DATA_ROW
                break
        next_row = last_used + 1

        values = ["", self.clock().strftime("%d/%m/%Y"), "", "", phone, "", "", "", ".", responsible]
        await self.client.update_range(f"'{tab}'!A{next_row}:J{next_row}", [values])
        logger.info("lead_registered", tab=tab, row=next_row, phone=phone)

    async def update_lead(self, phone: str, update: LeadUpdate) -> bool:
        tab = await self._tab()
        if not tab:
            return False

        rows = await self.client.read_range(f"'{tab}'!A{self.FIRST_DATA_ROW}:J")
        target = None
        for index in range(len(rows) - 1, -1, -1):
            row = rows[index]
            if len(row) > self.COL_PHONE and phones_match(str(row[self.COL_PHONE]), phone):
                target = index
                break
        if target is None:
            logger.debug("lead_not_found", phone=phone)
            return False

        existing = list(rows[target]) + [""] * (10 - len(rows[target]))
        updated = [
            existing[0],
            existing[1],
            update.customer_name or existing[2],
            update.vehicle or existing[3],
            existing[4],
            update.busca or existing[5],
            update.qualificado or existing[6],
            update.agendou or existing[7],
            update.vendeu or existing[8],
            update.responsible or existing[9],
        ]
        row_number = target + self.FIRST_DATA_ROW
        await self.client.update_range(f"'{tab}'!A{row_number}:J{row_number}", [updated])

        logger.info(
            "lead_updated",
            tab=tab,
            row=row_number,
            phone=phone,
            fields=sorted(k for k, v in update.model_dump().items() if v),
        )
        return True
