import asyncio
import base64

import httpx
import pytest

from thumbforge import config
from thumbforge.pipeline.errors import (
    RETRY_MESSAGE,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
)
from thumbforge.pipeline.models import CreditKind, GenerationOutcome, PipelineStatus
from thumbforge.pipeline.orchestrator import perturb
from thumbforge.pipeline.prompt import USER_IMAGE_DIRECTIVE
from thumbforge.pipeline.storage import store_thumbnail
from thumbforge.pipeline.models import ThumbnailAnswers

from conftest import ADMIN_EMAIL, FakeGenerator, FakeSearch, candidate, image_transport, make_png

ANSWERS = {
    "topic": "Python decorators",
    "targetAudience": "Developers",
    "emotion": "Excitement",
    "stylePreference": "Bold/Dramatic",
}

USER = ("u1", "u1@example.com")


def test_free_preview_then_denied(build):
    generator = FakeGenerator()
    service = build(generator=generator)

    async def scenario():
        check = await service.check_free_preview(*USER)
        first = await service.generate_thumbnail(*USER, ANSWERS)
        after = await service.check_free_preview(*USER)
        second = await service.generate_thumbnail(*USER, ANSWERS)
        return check, first, after, second, await service.list_history("u1")

    check, first, after, second, history = asyncio.run(scenario())
    assert check.can_generate is True
    assert first.ok
    assert first.status == PipelineStatus.DONE
    assert first.record.has_used_free_preview is True
    assert after.can_generate is False
    assert "purchase" in after.message.lower()

    assert second.status == PipelineStatus.FAILED
    assert second.error_code == ErrorCode.ENTITLEMENT_DENIED
    assert second.record.thumbnails_remaining == 0
    # Denied before any external call
    assert len(generator.requests) == 1
    assert len(history) == 1


def test_result_is_persisted_with_prompt_and_metadata(build):
    service = build()
    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS))
    result = report.result

    assert result.user_id == "u1"
    assert result.topic == "Python decorators"
    assert result.image_url.startswith("https://cdn.example.com/thumbnails/u1/")
    assert "Topic: Python decorators" in result.prompt
    assert result.answers["emotion"] == "Excitement"
    assert result.ctr_score == 88
    assert result.metadata["dimensions"] == "1280x720"
    assert result.metadata["model"] == "fake-image-model"


def test_paid_generation_consumes_one_thumbnail(build):
    service = build()

    async def scenario():
        await service.use_free_preview(*USER)
        await service.grant_credits("u1", 2, 0)
        report = await service.generate_thumbnail(*USER, ANSWERS)
        return report, await service.get_credits(*USER)

    report, record = asyncio.run(scenario())
    assert report.ok
    assert record.thumbnails_remaining == 1


def test_admin_generation_never_touches_balances(build):
    service = build()

    async def scenario():
        reports = [await service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS) for _ in range(3)]
        return reports, await service.get_credits("boss", ADMIN_EMAIL)

    reports, record = asyncio.run(scenario())
    assert all(r.ok for r in reports)
    assert record.thumbnails_remaining == 0
    assert record.has_used_free_preview is False


@pytest.mark.parametrize("code", [ErrorCode.PROVIDER_ERROR, ErrorCode.TIMEOUT, ErrorCode.NO_OUTPUT_PRODUCED])
def test_provider_failure_consumes_nothing(build, code):
    generator = FakeGenerator([GenerationOutcome.failure(code, "upstream said: secret details")])
    service = build(generator=generator)

    async def scenario():
        report = await service.generate_thumbnail(*USER, ANSWERS)
        return report, await service.get_credits(*USER), await service.list_history("u1")

    report, record, history = asyncio.run(scenario())
    assert report.status == PipelineStatus.FAILED
    assert report.error_code == code
    assert report.error == RETRY_MESSAGE
    assert record.has_used_free_preview is False
    assert history == []


def test_persistence_failure_consumes_nothing(build):
    async def broken_sink(user_id, result_id, data, mime_type):
        raise PersistenceError("bucket unavailable")

    service = build(image_sink=broken_sink)

    async def scenario():
        report = await service.generate_thumbnail(*USER, ANSWERS)
        return report, await service.get_credits(*USER)

    report, record = asyncio.run(scenario())
    assert report.error_code == ErrorCode.PERSISTENCE_ERROR
    assert record.has_used_free_preview is False


def test_lost_consumption_race_discards_result(build):
    class RacingGenerator(FakeGenerator):
        """Another request takes the free preview while this one is generating."""

        async def generate(self, request):
            await service.ledger.consume_free_preview("u1")
            return await super().generate(request)

    service = build(generator=RacingGenerator())

    async def scenario():
        report = await service.generate_thumbnail(*USER, ANSWERS)
        return report, await service.list_history("u1")

    report, history = asyncio.run(scenario())
    assert report.error_code == ErrorCode.ENTITLEMENT_DENIED
    assert history == []


def test_race_falls_back_to_paid_credit(build):
    class RacingGenerator(FakeGenerator):
        async def generate(self, request):
            await service.ledger.consume_free_preview("u1")
            return await super().generate(request)

    service = build(generator=RacingGenerator())

    async def scenario():
        await service.get_credits(*USER)
        await service.grant_credits("u1", 1, 0)
        report = await service.generate_thumbnail(*USER, ANSWERS)
        return report, await service.get_credits(*USER)

    report, record = asyncio.run(scenario())
    assert report.ok
    assert record.thumbnails_remaining == 0


def test_invalid_answers_are_a_validation_error(build):
    generator = FakeGenerator()
    service = build(generator=generator)
    report = asyncio.run(service.generate_thumbnail(*USER, {"topic": "   "}))
    assert report.error_code == ErrorCode.VALIDATION_ERROR
    assert generator.requests == []


def test_undecodable_user_image_is_a_validation_error(build):
    service = build()
    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS, "definitely not an image"))
    assert report.error_code == ErrorCode.VALIDATION_ERROR


def test_user_image_is_passed_to_provider(build):
    generator = FakeGenerator()
    service = build(generator=generator)
    upload = "data:image/png;base64," + base64.b64encode(make_png((0, 0, 255))).decode()

    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS, upload))
    assert report.ok
    request = generator.requests[0]
    assert request.image_count == 1
    assert USER_IMAGE_DIRECTIVE in request.prompt_text


def test_scratch_dir_empty_after_success_and_failure(build, tmp_path, png):
    search = FakeSearch([candidate(1), candidate(2)])
    client = httpx.AsyncClient(transport=image_transport({
        "https://img.example.com/1.jpg": png,
        "https://img.example.com/2.jpg": png,
    }))
    generator = FakeGenerator([GenerationOutcome.failure(ErrorCode.PROVIDER_ERROR, "boom")])
    service = build(generator=generator, search=search, client=client)

    async def scenario():
        failed = await service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS)
        ok = await service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS)
        return failed, ok

    failed, ok = asyncio.run(scenario())
    assert not failed.ok and ok.ok
    assert generator.requests[1].image_count == 2
    assert ok.result.metadata["reference_images"] == [
        "https://img.example.com/1.jpg",
        "https://img.example.com/2.jpg",
    ]
    assert list(tmp_path.iterdir()) == []


def test_scratch_dir_empty_after_unexpected_provider_exception(build, tmp_path, png):
    class ExplodingGenerator:
        async def generate(self, request):
            raise RuntimeError("client bug")

    search = FakeSearch([candidate(1)])
    client = httpx.AsyncClient(transport=image_transport({"https://img.example.com/1.jpg": png}))
    service = build(generator=ExplodingGenerator(), search=search, client=client)

    with pytest.raises(RuntimeError):
        asyncio.run(service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS))
    assert list(tmp_path.iterdir()) == []


def test_reference_search_failure_does_not_block_generation(build):
    from thumbforge.pipeline.errors import ProviderFailure

    generator = FakeGenerator()
    search = FakeSearch(error=ProviderFailure(ErrorCode.PROVIDER_ERROR, "quota"))
    service = build(generator=generator, search=search)
    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS))
    assert report.ok
    assert generator.requests[0].image_count == 0


def test_status_is_tracked_per_attempt(build):
    service = build()
    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS))
    status = service.get_status(report.attempt_id)
    assert status.status == PipelineStatus.DONE
    assert status.progress_pct == 100
    assert service.get_status("unknown").error == "Attempt not found"


def test_status_map_is_bounded_and_holds_no_image_data(build, monkeypatch):
    monkeypatch.setattr(config, "MAX_TRACKED_ATTEMPTS", 5)
    monkeypatch.setattr(config, "R2_ACCOUNT_ID", "")
    service = build(image_sink=store_thumbnail)

    async def scenario():
        return [await service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS) for _ in range(12)]

    reports = asyncio.run(scenario())
    assert reports[-1].result.image_url.startswith("data:image/png;base64,")
    assert len(service.generation._jobs) == 5
    assert service.get_status(reports[0].attempt_id).error == "Attempt not found"

    latest = service.get_status(reports[-1].attempt_id)
    assert latest.status == PipelineStatus.DONE
    assert latest.result is None
    assert latest.result_id == reports[-1].result.id


# ── Variations ───────────────────────────────────────────────────────────────

def test_variations_stop_when_credits_run_out(build):
    generator = FakeGenerator()
    service = build(generator=generator)

    async def scenario():
        await service.use_free_preview(*USER)
        await service.grant_credits("u1", 2, 0)
        return await service.generate_variations(*USER, ANSWERS, 4)

    batch = asyncio.run(scenario())
    assert len(batch.results) == 2
    assert len(batch.failures) == 1
    assert batch.failures[0].error_code == ErrorCode.ENTITLEMENT_DENIED
    assert batch.denied is False
    assert len(generator.requests) == 2


def test_variations_denied_on_first_attempt(build):
    generator = FakeGenerator()
    service = build(generator=generator)

    async def scenario():
        await service.use_free_preview(*USER)
        return await service.generate_variations(*USER, ANSWERS, 3)

    batch = asyncio.run(scenario())
    assert batch.results == []
    assert batch.denied is True
    assert batch.message
    assert generator.requests == []


def test_variations_tolerate_partial_provider_failure(build):
    generator = FakeGenerator([
        GenerationOutcome.success(make_png(), "image/png", "m"),
        GenerationOutcome.failure(ErrorCode.NO_OUTPUT_PRODUCED, "nothing"),
    ])
    service = build(generator=generator)
    batch = asyncio.run(service.generate_variations("boss", ADMIN_EMAIL, ANSWERS, 3))
    assert len(batch.results) == 2
    assert [f.error_code for f in batch.failures] == [ErrorCode.NO_OUTPUT_PRODUCED]
    assert len(generator.requests) == 3


def test_variations_perturb_style_and_emotion(build):
    generator = FakeGenerator()
    service = build(generator=generator)
    asyncio.run(service.generate_variations("boss", ADMIN_EMAIL, ANSWERS, 3))

    prompts = [r.prompt_text for r in generator.requests]
    assert "Visual style: Bold/Dramatic" in prompts[0]
    assert "Visual style: Minimalist/Clean" in prompts[1]
    assert "Target emotion: Urgency" in prompts[2]
    assert len(set(prompts)) == 3


def test_perturb_is_deterministic():
    answers = ThumbnailAnswers(topic="x", emotion="Curiosity", style_preference="Dark/Moody")
    assert perturb(answers, 0) is answers
    assert perturb(answers, 3) == perturb(answers, 3)
    assert perturb(answers, 1).style_preference != "Dark/Moody"
    assert perturb(answers, 2).emotion != "Curiosity"


# ── Regenerate ───────────────────────────────────────────────────────────────

def test_regenerate_without_session_is_not_found(build):
    service = build()
    with pytest.raises(NotFoundError):
        asyncio.run(service.regenerate_thumbnail(*USER))


def test_regenerate_reuses_stored_answers_and_consumes_regenerate(build):
    generator = FakeGenerator()
    service = build(generator=generator)

    async def scenario():
        first = await service.generate_thumbnail(*USER, ANSWERS)
        await service.grant_credits("u1", 0, 1)
        await service.create_regenerate_session("u1", "Python decorators", first.result.id)
        report = await service.regenerate_thumbnail(*USER)
        return (
            report,
            await service.get_credits(*USER),
            await service.get_active_regenerate_session("u1"),
            await service.list_history("u1"),
        )

    report, record, session, history = asyncio.run(scenario())
    assert report.ok
    assert record.regenerates_remaining == 0
    assert record.thumbnails_remaining == 0
    assert session is None
    assert len(history) == 2
    assert "Target emotion: Excitement" in generator.requests[1].prompt_text


def test_regenerate_denied_keeps_session(build):
    generator = FakeGenerator()
    service = build(generator=generator)

    async def scenario():
        await service.create_regenerate_session("u1", "Python decorators")
        report = await service.regenerate_thumbnail(*USER)
        return report, await service.get_active_regenerate_session("u1")

    report, session = asyncio.run(scenario())
    assert report.error_code == ErrorCode.ENTITLEMENT_DENIED
    assert session is not None
    assert generator.requests == []


def test_regenerate_carries_user_image(build):
    generator = FakeGenerator()
    service = build(generator=generator)
    upload = base64.b64encode(make_png()).decode()

    async def scenario():
        await service.get_credits(*USER)
        await service.grant_credits("u1", 0, 1)
        await service.create_regenerate_session("u1", "Pasta night", user_image=upload)
        return await service.regenerate_thumbnail(*USER)

    report = asyncio.run(scenario())
    assert report.ok
    assert report.result.topic == "Pasta night"
    assert generator.requests[0].image_count == 1


# ── History & sessions through the service ───────────────────────────────────

def test_get_result_checks_ownership(build):
    service = build()
    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS))

    assert asyncio.run(service.get_result(report.result.id, "u1")).id == report.result.id
    with pytest.raises(ForbiddenError):
        asyncio.run(service.get_result(report.result.id, "someone-else"))
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_result("missing", "u1"))


def test_delete_result_checks_ownership(build):
    service = build()
    report = asyncio.run(service.generate_thumbnail(*USER, ANSWERS))
    result_id = report.result.id

    with pytest.raises(ForbiddenError):
        asyncio.run(service.delete_result(result_id, "someone-else"))
    asyncio.run(service.delete_result(result_id, "u1"))
    assert asyncio.run(service.list_history("u1")) == []
    with pytest.raises(NotFoundError):
        asyncio.run(service.delete_result(result_id, "u1"))


def test_admin_listing_of_user_thumbnails(build):
    service = build()

    async def scenario():
        first = await service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS)
        second = await service.generate_thumbnail("boss", ADMIN_EMAIL, ANSWERS)
        return first, second, await service.list_user_thumbnails("boss")

    first, second, listed = asyncio.run(scenario())
    assert {r.id for r in listed} == {first.result.id, second.result.id}
    assert asyncio.run(service.list_user_thumbnails("nobody")) == []


def test_delete_foreign_session_is_forbidden(build):
    service = build()
    session = asyncio.run(service.create_regenerate_session("u1", "topic"))
    with pytest.raises(ForbiddenError):
        asyncio.run(service.delete_regenerate_session("u2", session.id))
    assert asyncio.run(service.delete_regenerate_session("u1", session.id)) == 1
    assert asyncio.run(service.delete_regenerate_session("u1", session.id)) == 0


def test_grant_package(build):
    service = build()

    async def scenario():
        await service.get_credits(*USER)
        return await service.grant_package("u1", "starter")

    record = asyncio.run(scenario())
    assert (record.thumbnails_remaining, record.regenerates_remaining) == (3, 5)
    with pytest.raises(ValueError):
        asyncio.run(service.grant_package("u1", "platinum"))


def test_consume_credit_through_service(build):
    service = build()

    async def scenario():
        denied = await service.consume_credit(*USER, CreditKind.REGENERATE)
        await service.grant_credits("u1", 0, 1)
        allowed = await service.consume_credit(*USER, CreditKind.REGENERATE)
        return denied, allowed

    denied, allowed = asyncio.run(scenario())
    assert not denied.success
    assert allowed.success and allowed.record.regenerates_remaining == 0


def test_delete_user_clears_sessions(build):
    service = build()

    async def scenario():
        await service.get_credits(*USER)
        await service.create_regenerate_session("u1", "topic")
        await service.delete_user("u1")
        return await service.get_active_regenerate_session("u1")

    assert asyncio.run(scenario()) is None
