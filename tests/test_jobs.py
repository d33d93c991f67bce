"""Tests for the job runner, MCF analysis and the contribution batch."""

import asyncio
from datetime import date

import pytest

from conftest import DAY_MS, hist, won_pipeline
from scripts.attribution.contribution_batch import (
    contribution_job,
    ensure_property_exists,
    process_contact,
    run_contribution_batch,
)
from scripts.attribution.job_runner import (
    COMPLETED,
    CONTRIBUTION,
    ERROR,
    IDLE,
    MCF,
    RUNNING,
    JobRunner,
    JobState,
    JobStore,
)
from scripts.attribution.mcf_analysis import run_mcf_analysis
from scripts.lib.errors import (
    APIAuthError,
    APIError,
    DataError,
    JobAlreadyRunningError,
    StageResolutionError,
)

MARKETING = ["REFERRALS", "PAID_SEARCH", "ORGANIC_SEARCH"]
DAY_100 = date(1970, 4, 11)
START = 100 * DAY_MS


class TestJobState:
    def test_snapshot_shape(self):
        state = JobState(tenant="p1", kind=MCF)
        snap = state.snapshot()
        assert snap["status"] == IDLE
        assert snap["running"] is False
        assert snap["skippedNoHistory"] == 0

    def test_counters_frozen_after_completion(self):
        state = JobState(tenant="p1", kind=MCF, status=RUNNING)
        state.incr("processed")
        state.complete({"ok": True})
        with pytest.raises(RuntimeError):
            state.incr("processed")
        assert state.processed == 1

    def test_unknown_counter(self):
        with pytest.raises(ValueError):
            JobState(tenant="p1", kind=MCF, status=RUNNING).incr("bogus")


class TestJobStore:
    def test_idle_by_default(self):
        assert JobStore().get("p1", MCF).status == IDLE

    def test_begin_rejects_second_run(self):
        store = JobStore()
        store.begin("p1", MCF)
        with pytest.raises(JobAlreadyRunningError):
            store.begin("p1", MCF)

    def test_keys_are_independent(self):
        store = JobStore()
        store.begin("p1", MCF)
        store.begin("p1", CONTRIBUTION)
        store.begin("p2", MCF)

    def test_finished_job_is_superseded(self):
        store = JobStore()
        first = store.begin("p1", MCF)
        first.complete()
        second = store.begin("p1", MCF)
        assert second is not first
        assert store.get("p1", MCF) is second


class TestJobRunner:
    @pytest.mark.asyncio
    async def test_single_flight(self):
        release = asyncio.Event()
        calls = []

        async def work(state, notify):
            calls.append(state.tenant)
            state.incr("processed", 5)
            await release.wait()
            return {"done": True}

        runner = JobRunner()
        first = runner.start("p1", MCF, work)
        await asyncio.sleep(0)
        second = runner.start("p1", MCF, work)
        assert first["status"] == RUNNING
        assert second["running"] is True
        assert second["processed"] == 5

        release.set()
        await runner.join()
        assert calls == ["p1"]
        status = runner.status("p1", MCF)
        assert status["status"] == COMPLETED
        assert status["finishedAt"] is not None

    @pytest.mark.asyncio
    async def test_structured_error_sets_error_state(self):
        async def work(state, notify):
            raise StageResolutionError("no stage is closed with probability 1.0")

        runner = JobRunner()
        state = await runner.run("p1", MCF, work)
        assert state.status == ERROR
        assert state.error_code == "STAGE_RESOLUTION_FAILED"
        assert "probability" in state.message

    @pytest.mark.asyncio
    async def test_unexpected_error_never_escapes(self):
        async def work(state, notify):
            raise KeyError("id")

        runner = JobRunner()
        runner.start("p1", MCF, work)
        await runner.join()
        status = runner.status("p1", MCF)
        assert status["status"] == ERROR
        assert status["errorCode"] == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_publishes_lifecycle_events(self):
        events = []

        async def sink(message):
            events.append(message["event"])

        async def work(state, notify):
            await notify()
            return None

        await JobRunner(on_event=sink).run("p1", CONTRIBUTION, work)
        assert events == ["job_started", "job_progress", "job_completed"]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_job(self):
        async def sink(message):
            raise ConnectionError("socket closed")

        async def work(state, notify):
            return None

        state = await JobRunner(on_event=sink).run("p1", MCF, work)
        assert state.status == COMPLETED


def _form_conversion(crm, contact_id, ts, history):
    crm.add("contacts", contact_id, first_conversion_date=ts)
    crm.set_history("contacts", contact_id, "hs_latest_source", history)


async def _mcf(crm, **kwargs):
    params = dict(
        conversion_type="form_submission",
        start_date=DAY_100,
        end_date=date(1970, 4, 30),
        threshold_pct=0,
        batch_size=2,
        batch_pause=0,
    )
    params.update(kwargs)
    return await run_mcf_analysis(crm, "p1", **params)


class TestMcfAnalysis:
    @pytest.mark.asyncio
    async def test_two_contacts_two_paths(self, crm):
        conv = START + 1000
        _form_conversion(crm, "1", conv, hist((START, "organic_search"), (START + 500, "direct_traffic")))
        _form_conversion(crm, "2", conv, hist((START + 10, "paid_search")))

        report = await _mcf(crm)
        assert report["totalConversions"] == 2
        assert report["totalContacts"] == 2
        assert sorted(p["key"] for p in report["paths"]) == ["ORGANIC_SEARCH>DIRECT_TRAFFIC", "PAID_SEARCH"]
        assert all(p["conversions"] == 1 for p in report["paths"])
        assert report["thresholdCount"] == 1

    @pytest.mark.asyncio
    async def test_no_history_is_unknown(self, crm):
        _form_conversion(crm, "1", START + 5, [])
        report = await _mcf(crm)
        assert report["paths"][0]["path"] == ["UNKNOWN"]

    @pytest.mark.asyncio
    async def test_threshold_filters_rare_paths(self, crm):
        for i in range(9):
            _form_conversion(crm, str(i), START + 100, hist((START, "REFERRALS")))
        _form_conversion(crm, "99", START + 100, hist((START, "OFFLINE")))

        report = await _mcf(crm, threshold_pct=20)
        assert report["thresholdCount"] == 2
        assert [p["key"] for p in report["paths"]] == ["REFERRALS"]
        assert report["uniquePaths"] == 2

    @pytest.mark.asyncio
    async def test_history_failure_counted_not_fatal(self, crm):
        _form_conversion(crm, "1", START + 5, hist((START, "REFERRALS")))
        _form_conversion(crm, "2", START + 5, hist((START, "REFERRALS")))
        crm.failing_history["2"] = APIError("HubSpot API returned 500", status_code=500)

        progress = JobState(tenant="p1", kind=MCF, status=RUNNING)
        report = await _mcf(crm, progress=progress)
        assert report["totalConversions"] == 1
        assert report["totalContacts"] == 2
        assert progress.failed == 1
        assert progress.processed == 1
        assert progress.converting == 2

    @pytest.mark.asyncio
    async def test_auth_failure_aborts_run(self, crm):
        _form_conversion(crm, "1", START + 5, [])
        crm.failing_history["1"] = APIAuthError("/crm/v3/objects/contacts/1")
        with pytest.raises(APIAuthError):
            await _mcf(crm)

    @pytest.mark.asyncio
    async def test_lookback(self, crm):
        conv = START + 40 * DAY_MS
        _form_conversion(crm, "1", conv, hist((START, "OFFLINE"), (conv - DAY_MS, "PAID_SEARCH")))
        report = await _mcf(crm, end_date=date(1970, 6, 30), lookback_days=7)
        assert report["paths"][0]["key"] == "PAID_SEARCH"
        assert report["lookbackDays"] == 7

    @pytest.mark.asyncio
    async def test_inverted_window_rejected(self, crm):
        with pytest.raises(DataError):
            await _mcf(crm, start_date=date(2024, 2, 1), end_date=date(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_result_independent_of_contact_order(self, crm):
        paths = [("A", "B"), ("B",), ("A", "B"), ("C", "A"), ("B",)]
        for i, tokens in enumerate(paths):
            _form_conversion(crm, str(i), START + 100, hist(*[(START + j, t) for j, t in enumerate(tokens)]))
        first = await _mcf(crm)

        reordered = type(crm)()
        for i, tokens in reversed(list(enumerate(paths))):
            _form_conversion(reordered, str(i), START + 100, hist(*[(START + j, t) for j, t in enumerate(tokens)]))
        second = await _mcf(reordered)
        assert first["paths"] == second["paths"]

    @pytest.mark.asyncio
    async def test_closed_won_values_and_currencies(self, crm):
        crm.pipelines = won_pipeline()
        won = START + DAY_MS
        crm.add("deals", "d1", dealstage="closedwon", closedate=won + DAY_MS,
                amount="1000", deal_currency_code="usd", hs_lastmodifieddate=won)
        crm.set_history("deals", "d1", "dealstage", hist((won, "closedwon")))
        crm.add("deals", "d2", dealstage="closedwon", closedate=won,
                amount="250.5", deal_currency_code="EUR", hs_lastmodifieddate=won)
        crm.associate("deals", "d1", "contacts", "1")
        crm.associate("deals", "d2", "contacts", "2")
        crm.set_history("contacts", "1", "hs_latest_source", hist((START, "REFERRALS")))
        crm.set_history("contacts", "2", "hs_latest_source", hist((START, "REFERRALS")))

        report = await _mcf(crm, conversion_type="closed_won_deal")
        assert report["totalConversions"] == 2
        assert report["approximateConversions"] == 1
        assert report["currencies"] == ["EUR", "USD"]
        assert report["mixedCurrencies"] is True
        (path,) = report["paths"]
        assert path["key"] == "REFERRALS"
        assert path["totalValue"] == 1250.5
        assert path["mixedCurrencies"] is True

    @pytest.mark.asyncio
    async def test_deal_created_single_currency(self, crm):
        crm.add("deals", "d1", createdate=START + DAY_MS, amount="400", deal_currency_code="GBP")
        crm.add("deals", "d2", createdate=START + 2 * DAY_MS, amount="100", deal_currency_code="GBP")
        crm.associate("deals", "d1", "contacts", "1")
        crm.associate("deals", "d2", "contacts", "2")
        crm.set_history("contacts", "1", "hs_latest_source", hist((START, "PAID_SEARCH")))
        crm.set_history("contacts", "2", "hs_latest_source", hist((START, "OFFLINE")))

        report = await _mcf(crm, conversion_type="deal_created")
        assert [(p["key"], p["totalValue"]) for p in report["paths"]] == [("PAID_SEARCH", 400.0), ("OFFLINE", 100.0)]
        assert report["currencies"] == ["GBP"]
        assert report["mixedCurrencies"] is False
        assert report["approximateConversions"] == 0

    @pytest.mark.asyncio
    async def test_deal_failures_counted_apart_from_contacts(self, crm):
        crm.pipelines = won_pipeline()
        won = START + DAY_MS
        crm.add("deals", "d1", dealstage="closedwon", closedate=won, amount="10", hs_lastmodifieddate=won)
        crm.add("deals", "d9", dealstage="closedwon", closedate=won, amount="10", hs_lastmodifieddate=won)
        crm.associate("deals", "d1", "contacts", "1")
        crm.associate("deals", "d9", "contacts", "9")
        crm.set_history("contacts", "1", "hs_latest_source", hist((START, "REFERRALS")))
        crm.failing_history["d9"] = APIError("HubSpot API returned 500", status_code=500)

        progress = JobState(tenant="p1", kind=MCF, status=RUNNING)
        report = await _mcf(crm, conversion_type="closed_won_deal", progress=progress)
        assert report["failedDeals"] == 1
        assert report["totalContacts"] == 1
        assert progress.failed == 0
        assert progress.processed == 1


class TestContributionBatch:
    @pytest.mark.asyncio
    async def test_ensure_property_created_once(self, crm):
        assert await ensure_property_exists(crm) is True
        assert await ensure_property_exists(crm) is False
        definition = crm.created_properties[0]
        assert definition["name"] == "marketing_contribution_percentage"
        assert definition["type"] == "number"
        assert definition["groupName"] == "contactinformation"

    @pytest.mark.asyncio
    async def test_process_contact_writes_percentage(self, crm):
        crm.set_history("contacts", "7", "hs_latest_source", hist(
            (1, "REFERRALS"), (2, "OFFLINE"), (3, "PAID_SEARCH"), (4, "OFFLINE"),
        ))
        result = await process_contact(crm, "7", MARKETING, "all_entries")
        assert result.percent == 0.5
        assert crm.updates["7"] == {"marketing_contribution_percentage": 50.0}

    @pytest.mark.asyncio
    async def test_batch_counters(self, crm):
        crm.page_size = 2
        for cid in ("1", "2", "3", "4"):
            crm.add("contacts", cid)
        crm.set_history("contacts", "1", "hs_latest_source", hist((1, "REFERRALS")))
        crm.set_history("contacts", "2", "hs_latest_source", hist((1, "OFFLINE")))
        crm.failing_updates.add("4")
        crm.set_history("contacts", "4", "hs_latest_source", hist((1, "REFERRALS")))

        progress = JobState(tenant="p1", kind=CONTRIBUTION, status=RUNNING)
        results = [
            r async for r in run_contribution_batch(
                crm, "p1", MARKETING, progress=progress, batch_size=2, batch_pause=0,
            )
        ]
        assert [r.entity_id for r in results] == ["1", "2", "3", "4"]
        assert progress.processed == 4
        assert progress.updated == 2
        assert progress.skipped_no_history == 1
        assert progress.failed == 1
        assert results[3].ok is False
        assert crm.updates["3"] == {"marketing_contribution_percentage": 0}

    @pytest.mark.asyncio
    async def test_contribution_job_end_to_end(self, crm):
        crm.add("contacts", "1")
        crm.set_history("contacts", "1", "hs_latest_source", hist((1, "PAID_SEARCH")))

        state = await JobRunner().run("p1", CONTRIBUTION, contribution_job(crm, MARKETING, batch_pause=0))
        assert state.status == COMPLETED
        assert state.property_created is True
        assert state.updated == 1
        assert state.message.startswith("Created property.")
        assert state.result["updated"] == 1

    @pytest.mark.asyncio
    async def test_fatal_error_stops_in_flight_contacts(self, crm):
        for cid in ("1", "2", "3", "4"):
            crm.add("contacts", cid)
            crm.set_history("contacts", cid, "hs_latest_source", hist((1, "REFERRALS")))
        crm.failing_history["1"] = APIAuthError("/crm/v3/objects/contacts/1")
        original = crm.get_property_history

        async def slow(object_type, object_id, prop):
            if object_id != "1":
                await asyncio.sleep(0.05)
            return await original(object_type, object_id, prop)

        crm.get_property_history = slow
        state = await JobRunner().run(
            "p1", CONTRIBUTION, contribution_job(crm, MARKETING, batch_size=3, batch_pause=0),
        )
        await asyncio.sleep(0.1)
        assert state.status == ERROR
        assert state.error_code == "API_AUTH_FAILED"
        assert crm.updates == {}
        assert state.snapshot()["processed"] == 0
