"""Tests for the sync run: counting, duplicate handling, fault isolation and listing failures."""
import json
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest

from careerpulse.gmail_service import MailboxError, NotConnectedError, ReconnectRequiredError
from careerpulse.models import Application, utcnow
from careerpulse.schemas import ApplicationStatus
from careerpulse.services.application_store import ApplicationStore
from careerpulse.services.sync_service import SyncRun, SyncStage, run_sync


def _job(company="Acme", title="Software Engineer", status="Applied", location="Remote"):
    return json.dumps({
        "isJobMessage": True,
        "company": company,
        "title": title,
        "status": status,
        "location": location,
    })


NOT_JOB = json.dumps({"isJobMessage": False, "company": "", "title": "", "status": "", "location": ""})


def _listing(messages, failed_ids=None):
    return patch(
        "careerpulse.services.sync_service.list_job_candidate_messages",
        new=AsyncMock(return_value=(messages, failed_ids or [])),
    )


async def test_single_job_message_creates_application(async_session, credential, extractor, make_message):
    extractor._call_llm.return_value = _job()
    with _listing([make_message()]):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.total_messages == 1
    assert summary.job_messages == 1
    assert summary.new_applications == 1
    assert summary.duplicates == 0
    assert summary.errors == 0
    assert summary.applications[0].company == "Acme"
    assert summary.applications[0].status == ApplicationStatus.APPLIED
    assert summary.applications[0].confidence_score == 90

    apps = await ApplicationStore(async_session).list_applications(credential.user_id)
    assert len(apps) == 1
    assert apps[0].date_applied == date(2026, 3, 2)
    assert apps[0].source == "Email"
    assert apps[0].source_message_id == "m1"
    assert apps[0].remote_policy == "Remote"
    assert apps[0].notes == 'Extracted from email: "Thank you for your application"'


async def test_same_job_twice_in_one_run_is_a_duplicate(async_session, credential, extractor, make_message):
    extractor._call_llm.return_value = _job()
    messages = [
        make_message(msg_id="m1"),
        make_message(msg_id="m2", subject="Application received"),
    ]
    with _listing(messages):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.new_applications == 1
    assert summary.duplicates == 1
    assert summary.job_messages == 2
    assert await ApplicationStore(async_session).count_applications(credential.user_id) == 1


async def test_overlong_title_is_still_detected_as_duplicate(async_session, credential, extractor, make_message):
    long_title = "Principal Platform Engineer " * 12
    extractor._call_llm.return_value = _job(title=long_title)
    messages = [
        make_message(msg_id="m1"),
        make_message(msg_id="m2", subject="Application received"),
    ]
    with _listing(messages):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.new_applications == 1
    assert summary.duplicates == 1
    apps = await ApplicationStore(async_session).list_applications(credential.user_id)
    assert apps[0].title == long_title.strip()[:255]


async def test_rerun_over_same_messages_creates_nothing(async_session, credential, extractor, make_message):
    extractor._call_llm.return_value = _job()
    with _listing([make_message()]):
        await run_sync(async_session, credential.user_id, extractor=extractor)
    with _listing([make_message()]):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.new_applications == 0
    assert summary.duplicates == 1
    # Second run is served from the extraction cache.
    assert extractor._call_llm.await_count == 1


async def test_prefiltered_message_never_reaches_extractor(async_session, credential, extractor, make_message):
    msg = make_message(subject="Your order shipped", body="Track your package.")
    with _listing([msg]):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    extractor._call_llm.assert_not_awaited()
    assert summary.total_messages == 1
    assert summary.job_messages == 0
    assert summary.errors == 0


async def test_non_job_and_failed_extraction_are_skipped_not_errors(async_session, credential, extractor, make_message):
    extractor._call_llm.side_effect = [NOT_JOB, RuntimeError("model down"), "garbage"]
    messages = [
        make_message(msg_id="m1", body="Thanks for applying"),
        make_message(msg_id="m2", body="Interview schedule"),
        make_message(msg_id="m3", body="Job offer"),
    ]
    with _listing(messages):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.total_messages == 3
    assert summary.job_messages == 0
    assert summary.new_applications == 0
    assert summary.errors == 0


async def test_fetch_failures_count_as_errors(async_session, credential, extractor, make_message):
    extractor._call_llm.return_value = _job()
    with _listing([make_message()], failed_ids=["bad1", "bad2"]):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.errors == 2
    assert summary.new_applications == 1


async def test_one_failing_message_does_not_stop_the_run(async_session, credential, extractor, make_message):
    extractor._call_llm.side_effect = [
        _job(company="Acme"),
        _job(company="Globex"),
        _job(company="Initech"),
    ]
    messages = [make_message(msg_id=f"m{i}", body=f"Application {i}") for i in range(3)]
    real_create = ApplicationStore.create_application

    async def flaky_create(self, application):
        if application.company == "Globex":
            raise RuntimeError("disk full")
        return await real_create(self, application)

    with _listing(messages), patch.object(ApplicationStore, "create_application", flaky_create):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.total_messages == 3
    assert summary.new_applications == 2
    assert summary.errors == 1
    assert [a.company for a in summary.applications] == ["Acme", "Initech"]


async def test_counts_add_up(async_session, credential, extractor, make_message):
    extractor._call_llm.side_effect = [_job(company="Acme"), NOT_JOB, _job(company="Acme")]
    messages = [
        make_message(msg_id="m1", body="Application one"),
        make_message(msg_id="m2", body="Application two"),
        make_message(msg_id="m3", body="Application three"),
        make_message(msg_id="m4", subject="Receipt", body="Thanks for your purchase"),
    ]
    with _listing(messages, failed_ids=["x"]):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.new_applications + summary.duplicates <= summary.job_messages <= summary.total_messages
    assert summary.new_applications == len(summary.applications) == 1
    assert summary.duplicates == 1
    assert summary.errors == 1


async def test_missing_received_date_uses_today(async_session, credential, extractor, make_message):
    extractor._call_llm.return_value = _job(location="Austin, TX")
    with _listing([make_message(received_at=None)]):
        await run_sync(async_session, credential.user_id, extractor=extractor)

    app = (await ApplicationStore(async_session).list_applications(credential.user_id))[0]
    assert app.date_applied == utcnow().date()
    assert app.remote_policy is None


async def test_not_connected_fails_before_listing(async_session, user, extractor):
    listing = AsyncMock()
    run = SyncRun(async_session, user.id, extractor=extractor)
    with patch("careerpulse.services.sync_service.list_job_candidate_messages", new=listing):
        with pytest.raises(NotConnectedError):
            await run.run()
    listing.assert_not_awaited()
    assert run.stage == SyncStage.FAILED


async def test_listing_failure_fails_the_run(async_session, credential, extractor):
    run = SyncRun(async_session, credential.user_id, extractor=extractor)
    failing = AsyncMock(side_effect=MailboxError("Failed to fetch emails: quota"))
    with patch("careerpulse.services.sync_service.list_job_candidate_messages", new=failing):
        with pytest.raises(MailboxError, match="^Failed to fetch emails"):
            await run.run()
    assert run.stage == SyncStage.FAILED
    assert await ApplicationStore(async_session).count_applications(credential.user_id) == 0


async def test_rejected_access_token_is_refreshed_once(async_session, credential, extractor, make_message):
    extractor._call_llm.return_value = _job()
    listing = AsyncMock(side_effect=[
        MailboxError("Failed to fetch emails: 401", auth_failed=True),
        ([make_message()], []),
    ])
    refresh = AsyncMock(side_effect=lambda db, cred, force=False: cred)
    with (
        patch("careerpulse.services.sync_service.list_job_candidate_messages", new=listing),
        patch("careerpulse.services.sync_service.ensure_fresh_credentials", new=refresh),
    ):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.new_applications == 1
    assert refresh.await_args_list[-1].kwargs == {"force": True}


async def test_unrefreshable_token_requires_reconnect(async_session, credential, extractor):
    refresh = AsyncMock(side_effect=ReconnectRequiredError("reconnect"))
    with patch("careerpulse.services.sync_service.ensure_fresh_credentials", new=refresh):
        with pytest.raises(ReconnectRequiredError):
            await run_sync(async_session, credential.user_id, extractor=extractor)


async def test_completed_run_reaches_done(async_session, credential, extractor):
    run = SyncRun(async_session, credential.user_id, extractor=extractor)
    with _listing([]):
        summary = await run.run()
    assert run.stage == SyncStage.DONE
    assert summary.total_messages == 0
    assert summary.applications == []


async def test_ten_message_scenario(async_session, credential, extractor, make_message):
    store = ApplicationStore(async_session)
    await store.create_application(Application(
        user_id=credential.user_id,
        company="Globex",
        title="Data Analyst",
        status="Applied",
        location="Austin, TX",
        date_applied=date(2026, 3, 2),
        source="Email",
        source_message_id="existing",
    ))

    noise = [make_message(msg_id=f"n{i}", subject=f"Receipt #{i}", body="Your order shipped") for i in range(7)]
    candidates = [
        make_message(msg_id="c1", body="Your application to Acme"),
        make_message(msg_id="c2", body="Your application to Globex"),
        make_message(msg_id="c3", body="Your application to Initech"),
    ]
    extractor._call_llm.side_effect = [
        _job(company="Acme"),
        _job(company="Globex", title="Data Analyst", location="Austin, TX"),
        RuntimeError("timeout"),
    ]
    with _listing(noise[:4] + candidates + noise[4:]):
        summary = await run_sync(async_session, credential.user_id, extractor=extractor)

    assert summary.model_dump(exclude={"applications"}) == {
        "total_messages": 10,
        "job_messages": 2,
        "new_applications": 1,
        "duplicates": 1,
        "errors": 0,
    }
