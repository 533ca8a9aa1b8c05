"""Tests for the Google Sheets calendar and lead tracker against a fake Sheets service."""

import asyncio
import re
from datetime import date, datetime

import pytest

from leadflow.calendar_store import SheetsCalendarStore
from leadflow.leads_store import SheetsLeadTracker, intention_to_busca, phones_match
from leadflow.db_models import Intention
from leadflow.models import CalendarBooking, LeadUpdate
from leadflow.sheets_client import SheetsClient, SheetsConfigError, load_service_account_info

from conftest import FakeClock

_RANGE_RE = re.compile(r"^'(?P<tab>.+)'!A(?P<start>\d+):[A-Z]+(?P<end>\d+)?$")


class _Request:
    def __init__(self, result):
        self._result = result

    def execute(self):
        return self._result()


class FakeValues:
    def __init__(self, sheet):
        self.sheet = sheet

    def get(self, **request):
        def run():
            match = _RANGE_RE.match(request["range"])
            rows = self.sheet.grid.get(match["tab"], {})
            start = int(match["start"])
            last = max(rows, default=start - 1)
            return {"values": [list(rows.get(n, [])) for n in range(start, last + 1)]}

        return _Request(run)

    def update(self, **request):
        def run():
            match = _RANGE_RE.match(request["range"])
            row = list(request["body"]["values"][0])
            self.sheet.grid.setdefault(match["tab"], {})[int(match["start"])] = row
            self.sheet.updates.append(request["range"])
            return {}

        return _Request(run)


class FakeSheetsService:
    """In-memory stand-in for the object googleapiclient's build("sheets", "v4") returns."""

    def __init__(self, grid):
        self.grid = grid
        self.updates = []
        self.tab_reads = 0

    def spreadsheets(self):
        return self

    def values(self):
        return FakeValues(self)

    def get(self, spreadsheetId):
        def run():
            self.tab_reads += 1
            return {"sheets": [{"properties": {"title": tab}} for tab in self.grid]}

        return _Request(run)


def _client(grid):
    service = FakeSheetsService(grid)
    return SheetsClient("sheet-id", "{}", service=service), service


def _october():
    return {
        "OUTUBRO 2026": {
            1: ["DIA", "DIA DA SEMANA", "HORA", "PRÉ VENDAS", "CLIENTE"],
            2: [19, "Segunda", "10h", "Ana", "Bruno"],
            3: [20, "Terça", "14:30", "Ana", "Carla"],
            4: ["20", "Terça", "9h", "Ana", "Daniel"],
            5: ["", "", "", "", ""],
        },
        "LEADS": {
            1: ["CONTROLE DE LEADS"],
            2: ["#", "DATA", "NOME", "CARRO", "TELEFONE", "BUSCA", "QUALIFICADO", "AGENDOU", "VENDEU", "RESPONSAVEL"],
            3: [1, "18/10/2026", "Bruno", "Onix", "(11) 93333-4444", "COMPRA", "SIM", "", ".", "Ana"],
        },
    }


def test_taken_slots_are_read_from_the_month_tab():
    client, _ = _client(_october())

    taken = asyncio.run(SheetsCalendarStore(client).get_taken_slots(date(2026, 10, 20)))

    assert taken == ["14:30", "09:00"]


def test_booking_is_written_after_the_last_used_row():
    client, service = _client(_october())
    booking = CalendarBooking(
        day=date(2026, 10, 21),
        time="11:00",
        pre_sales="Ana",
        client_name="Carlos",
        vehicle="Gol 2015",
        phone="5511999999999",
        city="Campinas",
        origin="LEAD (SELL)",
    )

    row = asyncio.run(SheetsCalendarStore(client).write_booking(booking))

    assert row == 5
    assert service.updates == ["'OUTUBRO 2026'!A5:J5"]
    assert service.grid["OUTUBRO 2026"][5] == [
        21, "Quarta", "11:00", "Ana", "Carlos", "Gol 2015", "5511999999999", "Campinas", "LEAD (SELL)", "",
    ]


def test_month_tab_detection_tolerates_naming_drift():
    client, _ = _client({"Outubro 2026 (cópia)": {}, "NOVEMBRO 2026": {}, "LEADS": {}})

    assert asyncio.run(client.detect_month_tab(date(2026, 10, 5))) == "Outubro 2026 (cópia)"
    assert asyncio.run(client.detect_month_tab(date(2026, 11, 5))) == "NOVEMBRO 2026"
    # No tab for December: fall back to the last month-looking tab.
    assert asyncio.run(client.detect_month_tab(date(2026, 12, 5))) == "NOVEMBRO 2026"


def test_tab_list_is_cached():
    clock = [100.0]
    service = FakeSheetsService(_october())
    client = SheetsClient("sheet-id", "{}", service=service, monotonic=lambda: clock[0])

    async def _run():
        await client.get_tabs()
        await client.get_tabs()
        clock[0] += 301
        await client.get_tabs()

    asyncio.run(_run())
    assert service.tab_reads == 2


def test_lead_is_registered_on_the_next_free_row():
    client, service = _client(_october())
    tracker = SheetsLeadTracker(client, clock=FakeClock(datetime(2026, 10, 19, 10, 0)))

    asyncio.run(tracker.register_lead("5511999999999", "Ana"))

    assert service.grid["LEADS"][4] == ["", "19/10/2026", "", "", "5511999999999", "", "", "", ".", "Ana"]


def test_lead_update_matches_phone_by_suffix_and_keeps_other_columns():
    client, service = _client(_october())
    tracker = SheetsLeadTracker(client)

    found = asyncio.run(tracker.update_lead("5511933334444", LeadUpdate(agendou="SIM", responsible="HUMANO")))

    assert found
    assert service.grid["LEADS"][3] == [
        1, "18/10/2026", "Bruno", "Onix", "(11) 93333-4444", "COMPRA", "SIM", "SIM", ".", "HUMANO",
    ]


def test_lead_update_for_unknown_phone():
    client, service = _client(_october())

    assert not asyncio.run(SheetsLeadTracker(client).update_lead("5521988887777", LeadUpdate(agendou="SIM")))
    assert service.updates == []


def test_missing_leads_tab_is_tolerated():
    client, service = _client({"OUTUBRO 2026": {}})

    asyncio.run(SheetsLeadTracker(client).register_lead("5511999999999", "Ana"))
    assert service.updates == []


def test_phone_matching():
    assert phones_match("5511999999999", "(11) 99999-9999")
    assert phones_match("+55 11 99999-9999", "5511999999999")
    assert not phones_match("5511999999999", "5511988888888")
    assert not phones_match("", "5511999999999")


def test_intention_to_busca():
    assert intention_to_busca(Intention.APPRAISE) == "AVALIAÇÃO"
    assert intention_to_busca(None) == ""


def test_service_account_info_accepts_json_or_path(tmp_path):
    path = tmp_path / "sa.json"
    path.write_text('{"type": "service_account"}')

    assert load_service_account_info(str(path)) == {"type": "service_account"}
    assert load_service_account_info('{"type": "service_account"}') == {"type": "service_account"}
    with pytest.raises(SheetsConfigError):
        load_service_account_info("not json")
    with pytest.raises(SheetsConfigError):
        load_service_account_info("")
