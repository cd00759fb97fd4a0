"""
Test cases for the circulation API client.
"""

import pytest

from circulation.errors import AuthError, CirculationApiError, TerminalFetchFailure
from tests.conftest import charge_item


class TestGetCharges:
    """Test cases for charge listing."""

    @pytest.mark.asyncio
    async def test_maps_entries(self, pyxis, circulation_client):
        pyxis.charges = [charge_item(101, due_date="2025-01-24 00:00:00", renew_count=1, biblio_id=77)]

        charges = await circulation_client.get_charges()

        assert len(charges) == 1
        charge = charges[0]
        assert charge.charge_id == "101"
        assert charge.biblio_id == 77
        assert charge.title == "Clean Code"
        assert charge.due_date == "2025-01-24"
        assert charge.renew_count == 1

    @pytest.mark.asyncio
    async def test_paginates_until_total_count(self, pyxis, circulation_client):
        pyxis.charges = [charge_item(i) for i in range(1, 6)]

        charges = await circulation_client.get_charges()

        assert [c.charge_id for c in charges] == ["1", "2", "3", "4", "5"]
        # page_size=2 -> offsets 0, 2, 4
        assert pyxis.count("/api/charges") == 3
        offsets = [r.url.params["offset"] for r in pyxis.requests if r.url.path.endswith("/api/charges")]
        assert offsets == ["0", "2", "4"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count, requests", [(5, 3), (4, 3), (1, 1)])
    async def test_paginates_without_total_count(self, pyxis, circulation_client, count, requests):
        pyxis.send_total_count = False
        pyxis.charges = [charge_item(i) for i in range(1, count + 1)]

        charges = await circulation_client.get_charges()

        assert [c.charge_id for c in charges] == [str(i) for i in range(1, count + 1)]
        assert pyxis.count("/api/charges") == requests

    @pytest.mark.asyncio
    async def test_empty_list(self, pyxis, circulation_client):
        charges = await circulation_client.get_charges()

        assert charges == []
        assert pyxis.count("/api/charges") == 1

    @pytest.mark.asyncio
    async def test_unsuccessful_envelope(self, pyxis, circulation_client):
        pyxis.charges_envelope = {"success": False, "code": "error.unknown", "message": "Maintenance"}

        with pytest.raises(CirculationApiError) as exc_info:
            await circulation_client.get_charges()

        assert exc_info.value.api_code == "error.unknown"
        assert "Maintenance" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_client_error_status(self, pyxis, circulation_client):
        pyxis.charges_statuses = [400]

        with pytest.raises(CirculationApiError) as exc_info:
            await circulation_client.get_charges()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, pyxis, circulation_client):
        pyxis.charges_statuses = [503, 503, 503]

        with pytest.raises(TerminalFetchFailure) as exc_info:
            await circulation_client.get_charges()

        assert exc_info.value.status_code == 503
        assert pyxis.count("/api/charges") == 3

    @pytest.mark.asyncio
    async def test_persistent_rejection(self, pyxis, circulation_client):
        pyxis.charges_statuses = [401, 401]

        with pytest.raises(AuthError):
            await circulation_client.get_charges()
        assert pyxis.count("/api/login") == 2

    @pytest.mark.asyncio
    async def test_malformed_entry(self, pyxis, circulation_client):
        pyxis.charges = [{"barcode": "no id"}]

        with pytest.raises(CirculationApiError, match="Malformed"):
            await circulation_client.get_charges()


class TestGetChargeHistories:
    """Test cases for discharge history listing."""

    @pytest.mark.asyncio
    async def test_stop_when_ends_paging_early(self, pyxis, circulation_client):
        pyxis.histories = [charge_item(i, discharge_date="2025-01-20") for i in range(1, 7)]

        histories = await circulation_client.get_charge_histories(
            stop_when=lambda records: any(r.charge_id == "2" for r in records)
        )

        assert [h.charge_id for h in histories] == ["1", "2"]
        assert pyxis.count("/api/charge-histories") == 1
        assert histories[0].is_discharged

    @pytest.mark.asyncio
    async def test_reads_all_pages_without_predicate(self, pyxis, circulation_client):
        pyxis.histories = [charge_item(i, discharge_date="2025.01.20") for i in range(1, 4)]

        histories = await circulation_client.get_charge_histories()

        assert len(histories) == 3
        assert histories[2].discharge_date == "2025-01-20"
