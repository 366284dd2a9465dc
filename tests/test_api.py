"""API tests through the ASGI app with fake providers and storage."""

import asyncio
import json

import stripe
from sqlalchemy import select

from taleforge.api.routers.sse import story_event_stream
from taleforge.models import GenerationStatus, Story, StorySegment, Subscriber, UserFeedback, UserUsage
from taleforge.providers import ProviderRequestError
from taleforge.services.provider_errors import AIProviderType
from taleforge.services.tiers import current_month

from conftest import sign


async def create_story(client, **payload) -> dict:
    body = {"prompt": "A fox who finds a glowing key", "genre": "animals", "age": "4-6", **payload}
    response = await client.post("/api/stories/segments", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestHealth:
    async def test_health(self, client) -> None:
        response = await client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["providers"] == {"text": True, "image": True, "speech": True}

    async def test_probes(self, client) -> None:
        assert (await client.get("/api/ready")).json() == {"ready": True}
        assert (await client.get("/api/live")).json() == {"alive": True}


class TestSegmentEndpoints:
    """Test generating and continuing stories."""

    async def test_anonymous_story_with_background_image(self, client, uploads) -> None:
        segment = await create_story(client)

        assert segment["segment_number"] == 1
        assert segment["choices"] == ["Follow the glow", "Open the door", "Climb the hill"]
        assert segment["image_generation_status"] == "pending"
        assert segment["model_used"] == "Meta-Llama-3_3-70B-Instruct"

        status = (await client.get(f"/api/stories/{segment['story_id']}/status")).json()
        assert status["segment_count"] == 1
        assert status["is_generating"] is False
        assert status["segments"][0]["image_generation_status"] == "completed"
        assert status["segments"][0]["image_url"].startswith("https://storage.example.com/story-images/")
        assert uploads.calls[0][0] == "story-images"

    async def test_continue_story(self, client, text_provider) -> None:
        first = await create_story(client)
        second = await create_story(
            client,
            story_id=first["story_id"],
            parent_segment_id=first["id"],
            choice_text="Open the door",
        )

        assert second["story_id"] == first["story_id"]
        assert second["segment_number"] == 2
        assert 'Continue from: "Open the door"' in text_provider.prompts[-1]

        story = (await client.get(f"/api/stories/{first['story_id']}")).json()
        assert story["segment_count"] == 2
        assert [s["segment_number"] for s in story["segments"]] == [1, 2]
        assert story["segments"][1]["triggering_choice_text"] == "Open the door"
        assert story["title"].endswith("...")

    async def test_skip_image(self, client, uploads) -> None:
        segment = await create_story(client, skip_image=True)
        assert segment["image_generation_status"] == "skipped"
        assert uploads.calls == []

    async def test_validation(self, client) -> None:
        response = await client.post("/api/stories/segments", json={"prompt": ""})
        assert response.status_code == 422

    async def test_provider_outage(self, client, text_provider) -> None:
        text_provider.error = ProviderRequestError(AIProviderType.OVH_AI_ENDPOINTS, "upstream down", 503)

        response = await client.post("/api/stories/segments", json={"prompt": "A tale"})

        assert response.status_code == 503
        body = response.json()
        assert body["error"].startswith("Unable to generate story text")
        assert body["details"]["provider"] == "ovh-ai-endpoints"
        assert body["details"]["retryable"] is True

    async def test_story_limit(self, client, auth, session) -> None:
        auth.login()
        session.add(UserUsage(user_id="user-1", month_year=current_month(), stories_created=20))
        await session.commit()

        response = await client.post("/api/stories/segments", json={"prompt": "A tale"})

        assert response.status_code == 402
        assert response.json()["details"] == {"current_usage": 20, "limit": 20, "upgrade_required": True}

    async def test_continue_someone_elses_story(self, client, auth) -> None:
        auth.login("owner")
        first = await create_story(client)
        auth.login("intruder")

        response = await client.post(
            "/api/stories/segments",
            json={"prompt": "x", "story_id": first["story_id"], "parent_segment_id": first["id"]},
        )
        assert response.status_code == 403

    async def test_finish_story(self, client) -> None:
        first = await create_story(client)

        response = await client.post(f"/api/stories/{first['story_id']}/finish")

        assert response.status_code == 200
        finale = response.json()
        assert finale["is_end"] is True
        assert finale["choices"] == []
        assert finale["model_used"] == "finale"

        story = (await client.get(f"/api/stories/{first['story_id']}")).json()
        assert story["is_completed"] is True
        assert (await client.post(f"/api/stories/{first['story_id']}/finish")).status_code == 409

    async def test_regenerate_image(self, client, auth, image_provider) -> None:
        auth.login()
        first = await create_story(client, skip_image=True)

        response = await client.post(
            f"/api/stories/segments/{first['id']}/image",
            json={"prompt": "A lantern in the woods"},
        )

        assert response.status_code == 200
        assert response.json()["segment_id"] == first["id"]
        assert image_provider.prompts[-1].startswith("A lantern in the woods")

        auth.login("someone-else")
        response = await client.post(f"/api/stories/segments/{first['id']}/image")
        assert response.status_code == 403

    async def test_test_image_requires_login(self, client, auth) -> None:
        assert (await client.post("/api/stories/images/test", json={"prompt": "A dragon"})).status_code == 401
        auth.login()
        response = await client.post("/api/stories/images/test", json={"prompt": "A dragon"})
        assert response.status_code == 200
        assert response.json()["segment_id"] is None


class TestStoryLibrary:
    """Test listing, publishing and deleting stories."""

    async def test_list_requires_login(self, client) -> None:
        assert (await client.get("/api/stories")).status_code == 401

    async def test_list_and_filter(self, client, auth) -> None:
        auth.login()
        await create_story(client, prompt="Dragon adventure", genre="fantasy-magic")
        await create_story(client, prompt="Fox tale")
        auth.login("user-2")
        await create_story(client, prompt="Other user's story")
        auth.login()

        data = (await client.get("/api/stories")).json()
        assert data["total"] == 2
        assert data["has_more"] is False

        data = (await client.get("/api/stories", params={"search": "dragon"})).json()
        assert [s["title"] for s in data["items"]] == ["Dragon adventure..."]

        data = (await client.get("/api/stories", params={"genre": "animals", "page_size": 1})).json()
        assert data["total"] == 1
        assert data["items"][0]["story_mode"] == "animals"

        data = (await client.get("/api/stories", params={"page_size": 1})).json()
        assert data["has_more"] is True

    async def test_private_story_hidden_from_others(self, client, auth) -> None:
        auth.login()
        story_id = (await create_story(client))["story_id"]

        auth.login("user-2")
        assert (await client.get(f"/api/stories/{story_id}")).status_code == 404
        auth.user = None
        assert (await client.get(f"/api/stories/{story_id}/status")).status_code == 404

    async def test_publish_and_discover(self, client, auth) -> None:
        auth.login()
        story_id = (await create_story(client))["story_id"]

        response = await client.patch(f"/api/stories/{story_id}", json={"is_public": True, "title": "  The Key  "})
        assert response.status_code == 200
        assert response.json()["title"] == "The Key"
        assert response.json()["published_at"] is not None

        auth.user = None
        public = (await client.get("/api/stories/public")).json()
        assert [s["id"] for s in public["items"]] == [story_id]
        assert (await client.get(f"/api/stories/{story_id}")).status_code == 200

        auth.login()
        response = await client.patch(f"/api/stories/{story_id}", json={"is_public": False})
        assert response.json()["published_at"] is None

    async def test_update_rules(self, client, auth) -> None:
        auth.login()
        story_id = (await create_story(client))["story_id"]

        assert (await client.patch(f"/api/stories/{story_id}", json={"title": "   "})).status_code == 400
        auth.login("user-2")
        assert (await client.patch(f"/api/stories/{story_id}", json={"title": "Mine"})).status_code == 403

    async def test_delete(self, client, auth) -> None:
        auth.login()
        story_id = (await create_story(client))["story_id"]

        assert (await client.delete(f"/api/stories/{story_id}")).status_code == 204
        assert (await client.get(f"/api/stories/{story_id}")).status_code == 404
        assert (await client.delete(f"/api/stories/{story_id}")).status_code == 404


class TestNarrationEndpoint:
    async def test_narrate_in_background(self, client, auth, speech_provider, uploads) -> None:
        auth.login()
        story_id = (await create_story(client, skip_image=True))["story_id"]

        response = await client.post(f"/api/stories/{story_id}/audio", json={"voice_id": "nova"})

        assert response.status_code == 202
        assert response.json() == {"story_id": story_id, "audio_generation_status": "pending", "estimated_minutes": 1}
        assert speech_provider.calls[0][1] == "nova"

        status = (await client.get(f"/api/stories/{story_id}/status")).json()
        assert status["audio_generation_status"] == "completed"
        assert status["full_story_audio_url"].startswith("https://storage.example.com/story-audio/")

        usage = (await client.get("/api/account/usage")).json()
        assert usage["voice_generations"] == 1
        assert usage["narrated_minutes_used"] == 1

    async def test_requires_login(self, client, auth) -> None:
        story_id = (await create_story(client))["story_id"]
        assert (await client.post(f"/api/stories/{story_id}/audio")).status_code == 401


class TestSSEEndpoint:
    async def test_unknown_story(self, client) -> None:
        assert (await client.get("/api/sse/stories/missing")).status_code == 404


class TestCharacters:
    """Test the character library."""

    async def test_crud(self, client, auth) -> None:
        auth.login()
        created = await client.post(
            "/api/characters",
            json={"name": "  Luna ", "description": "A curious fox", "traits": ["brave"]},
        )
        assert created.status_code == 201
        character = created.json()
        assert character["name"] == "Luna"
        assert character["is_active"] is True

        updated = await client.patch(f"/api/characters/{character['id']}", json={"role": "hero"})
        assert updated.json()["role"] == "hero"
        assert updated.json()["description"] == "A curious fox"

        assert len((await client.get("/api/characters")).json()) == 1
        assert (await client.delete(f"/api/characters/{character['id']}")).status_code == 204
        assert (await client.get("/api/characters")).json() == []
        assert (await client.patch(f"/api/characters/{character['id']}", json={"role": "x"})).status_code == 404

    async def test_free_tier_limit(self, client, auth) -> None:
        auth.login()
        for name in ("A", "B", "C"):
            assert (await client.post("/api/characters", json={"name": name})).status_code == 201

        response = await client.post("/api/characters", json={"name": "D"})

        assert response.status_code == 402
        assert response.json()["details"]["limit"] == 3

    async def test_paid_tier_unlimited(self, client, auth, session) -> None:
        auth.login()
        session.add(Subscriber(user_id="user-1", subscribed=True, is_active=True, subscription_tier="Premium"))
        await session.commit()

        for name in ("A", "B", "C", "D"):
            assert (await client.post("/api/characters", json={"name": name})).status_code == 201

    async def test_other_users_character(self, client, auth) -> None:
        auth.login()
        character = (await client.post("/api/characters", json={"name": "Luna"})).json()
        auth.login("user-2")
        assert (await client.delete(f"/api/characters/{character['id']}")).status_code == 403


class TestFeedbackAndWaitlist:
    async def test_anonymous_feedback(self, client) -> None:
        response = await client.post(
            "/api/feedback",
            json={"feedback_type": "bug", "message": "Images never load"},
            headers={"User-Agent": "pytest-browser"},
        )
        assert response.status_code == 201
        assert response.json()["status"] == "new"
        assert response.json()["feedback_type"] == "bug"

    async def test_feedback_uses_account_email(self, client, auth, session) -> None:
        auth.login()
        await client.post("/api/feedback", json={"message": "Love it"})

        feedback = (await session.execute(select(UserFeedback))).scalar_one()
        assert feedback.email == "reader@example.com"
        assert feedback.user_id == "user-1"

    async def test_waitlist(self, client) -> None:
        response = await client.post("/api/waitlist", json={"email": "Parent@Example.com", "name": "Sam"})
        assert response.status_code == 201
        assert response.json()["email"] == "parent@example.com"

        duplicate = await client.post("/api/waitlist", json={"email": "parent@example.com"})
        assert duplicate.status_code == 409

        assert (await client.post("/api/waitlist", json={"email": "not-an-email"})).status_code == 422


class TestAccount:
    """Test usage, subscription and founder endpoints."""

    async def test_usage(self, client, auth) -> None:
        auth.login()
        await create_story(client)

        usage = (await client.get("/api/account/usage")).json()
        assert usage["tier"] == "Free"
        assert usage["stories_created"] == 1
        assert usage["images_generated"] == 1
        assert usage["limits"]["stories_per_month"] == 20

    async def test_subscription_and_founder(self, client, auth) -> None:
        auth.login()
        subscription = (await client.get("/api/account/subscription")).json()
        assert subscription["effective_tier"] == "Free"
        assert subscription["is_founder"] is False

        founder = (await client.post("/api/account/founder")).json()
        assert founder["is_founder"] is True
        assert founder["founder_number"] == 1
        assert founder["founder_tier"] == "genesis"
        assert (await client.post("/api/account/founder")).json()["founder_number"] == 1

        subscription = (await client.get("/api/account/subscription")).json()
        assert subscription["effective_tier"] == "Pro"
        assert subscription["lifetime_discount"] == 100


class TestBillingEndpoints:
    async def test_checkout(self, client, auth, monkeypatch) -> None:
        monkeypatch.setattr(
            stripe.checkout.Session,
            "create",
            lambda **kwargs: {"id": "cs_1", "url": "https://checkout.stripe.com/cs_1"},
        )
        auth.login()

        response = await client.post("/api/billing/checkout", json={"tier": "Pro"})
        assert response.status_code == 200
        assert response.json() == {"session_id": "cs_1", "url": "https://checkout.stripe.com/cs_1"}

        assert (await client.post("/api/billing/checkout", json={"tier": "Gold"})).status_code == 400

    async def test_config(self, client, settings) -> None:
        assert (await client.get("/api/billing/config")).status_code == 503

        settings.stripe_publishable_key = "pk_test_123"
        response = await client.get("/api/billing/config")

        assert response.status_code == 200
        data = response.json()
        assert data["publishable_key"] == "pk_test_123"
        assert data["price_to_tier"]["pro"] == "price_pro"
        assert data["tier_names"]["price_family"] == "Family"

    async def test_verify(self, client, auth, session_factory, monkeypatch) -> None:
        monkeypatch.setattr(
            stripe.checkout.Session,
            "retrieve",
            lambda session_id, **kwargs: {
                "id": session_id,
                "mode": "subscription",
                "payment_status": "paid",
                "subscription": "sub_1",
                "customer": "cus_1",
                "metadata": {"user_id": "user-1", "tier": "Core"},
            },
        )
        monkeypatch.setattr(
            stripe.Subscription,
            "retrieve",
            lambda subscription_id, **kwargs: {"id": subscription_id, "status": "active"},
        )

        assert (await client.post("/api/billing/verify", json={"session_id": "cs_1"})).status_code == 401

        auth.login()
        response = await client.post("/api/billing/verify", json={"session_id": "cs_1"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        async with session_factory() as fresh:
            subscriber = (await fresh.execute(select(Subscriber))).scalar_one()
        assert subscriber.subscription_tier == "Premium"
        assert subscriber.stripe_customer_id == "cus_1"

    async def test_webhook(self, client, session, session_factory) -> None:
        session.add(Subscriber(user_id="user-1", stripe_customer_id="cus_1", subscribed=True, is_active=True))
        await session.commit()
        payload = json.dumps(
            {
                "id": "evt_1",
                "object": "event",
                "type": "customer.subscription.deleted",
                "data": {"object": {"customer": "cus_1"}},
            }
        ).encode()

        response = await client.post(
            "/api/billing/webhook",
            content=payload,
            headers={"stripe-signature": sign(payload), "content-type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "cancelled"}
        async with session_factory() as fresh:
            subscriber = (await fresh.execute(select(Subscriber))).scalar_one()
        assert subscriber.subscribed is False
        assert subscriber.subscription_tier == "Free"

    async def test_webhook_bad_signature(self, client) -> None:
        response = await client.post(
            "/api/billing/webhook",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=bad"},
        )
        assert response.status_code == 400


class TestAdmin:
    """Test the admin console endpoints."""

    async def test_requires_admin(self, client, auth) -> None:
        auth.login()
        assert (await client.get("/api/admin/overview")).status_code == 403

    async def test_overview(self, client, auth) -> None:
        auth.login()
        await create_story(client)
        await client.post("/api/waitlist", json={"email": "a@example.com"})
        await client.post("/api/feedback", json={"message": "Hi"})
        auth.login("admin-1", admin=True)

        overview = (await client.get("/api/admin/overview")).json()

        assert overview["total_stories"] == 1
        assert overview["total_segments"] == 1
        assert overview["waitlist"] == 1
        assert overview["open_feedback"] == 1
        assert overview["active_subscribers"] == 0

    async def test_feedback_triage(self, client, auth) -> None:
        await client.post("/api/feedback", json={"message": "Broken", "feedback_type": "bug"})
        await client.post("/api/feedback", json={"message": "Idea", "feedback_type": "feature"})
        auth.login("admin-1", admin=True)

        bugs = (await client.get("/api/admin/feedback", params={"feedback_type": "bug"})).json()
        assert bugs["total"] == 1
        feedback_id = bugs["items"][0]["id"]

        resolved = (await client.patch(f"/api/admin/feedback/{feedback_id}", json={"status": "resolved"})).json()
        assert resolved["resolved_by"] == "admin-1"
        assert resolved["resolved_at"] is not None

        reopened = (await client.patch(f"/api/admin/feedback/{feedback_id}", json={"status": "in_progress"})).json()
        assert reopened["resolved_by"] is None

        assert (await client.patch("/api/admin/feedback/missing", json={"status": "closed"})).status_code == 404

    async def test_waitlist_and_reset(self, client, auth) -> None:
        await client.post("/api/waitlist", json={"email": "a@example.com"})
        auth.login("admin-1", admin=True)

        waitlist = (await client.get("/api/admin/waitlist")).json()
        assert [item["email"] for item in waitlist["items"]] == ["a@example.com"]

        response = await client.post("/api/admin/audio/reset-stuck", params={"older_than_minutes": 30})
        assert response.json() == {"reset_count": 0, "story_ids": []}


class FakeRequest:
    """Stand-in for a streaming request; flip ``disconnected`` to hang up."""

    def __init__(self, disconnected: bool = False):
        self.disconnected = disconnected

    async def is_disconnected(self) -> bool:
        return self.disconnected


async def make_generating_story(session_factory) -> tuple[Story, StorySegment]:
    async with session_factory() as session:
        story = Story(title="Fox tale", user_id=None, segments=[])
        session.add(story)
        await session.flush()
        segment = StorySegment(
            story_id=story.id,
            segment_number=1,
            segment_text="Luna the fox.",
            image_prompt="A fox",
            image_generation_status=GenerationStatus.PENDING,
        )
        session.add(segment)
        await session.commit()
        return story, segment


def parse(chunk: str) -> dict:
    assert chunk.startswith("data: ")
    return json.loads(chunk[len("data: "):])


class TestStoryEventStream:
    """Test the SSE generator directly."""

    async def test_forwards_bus_events_until_completed(self, session_factory, bus, settings) -> None:
        story, segment = await make_generating_story(session_factory)
        stream = story_event_stream(story.id, FakeRequest(), bus, session_factory, settings, [segment])

        connected = parse(await anext(stream))
        assert connected["type"] == "connected"
        assert connected["segments"][0]["image_generation_status"] == "pending"
        assert bus.subscriber_count(story.id) == 1

        segment.image_generation_status = GenerationStatus.COMPLETED
        segment.image_url = "https://storage.example.com/story-images/a.png"
        await bus.publish_segment_updated(story.id, segment)
        await bus.publish_story_completed(story.id)

        updated = parse(await anext(stream))
        assert updated["type"] == "segment_updated"
        assert updated["segment"]["image_url"].endswith("a.png")
        assert parse(await anext(stream))["type"] == "story_completed"

        remaining = [chunk async for chunk in stream]
        assert remaining == []
        assert bus.subscriber_count(story.id) == 0

    async def test_fallback_polling_finds_database_changes(self, session_factory, bus, settings) -> None:
        story, segment = await make_generating_story(session_factory)
        stream = story_event_stream(story.id, FakeRequest(), bus, session_factory, settings, [segment])
        await anext(stream)

        async with session_factory() as session:
            row = await session.get(StorySegment, segment.id)
            row.image_generation_status = GenerationStatus.COMPLETED
            row.image_url = "https://storage.example.com/story-images/b.png"
            await session.commit()

        # The bus stays quiet, so the stream sends a keepalive and starts polling
        assert await anext(stream) == ": keepalive\n\n"
        event = parse(await asyncio.wait_for(anext(stream), timeout=2))

        assert event["type"] == "segment_updated"
        assert event["source"] == "poll"
        assert event["segment"]["image_generation_status"] == "completed"
        await stream.aclose()
        assert bus.subscriber_count(story.id) == 0

    async def test_disconnected_client(self, session_factory, bus, settings) -> None:
        story, segment = await make_generating_story(session_factory)
        request = FakeRequest(disconnected=True)
        stream = story_event_stream(story.id, request, bus, session_factory, settings, [segment])

        chunks = [chunk async for chunk in stream]

        assert len(chunks) == 1
        assert parse(chunks[0])["type"] == "connected"
        assert bus.subscriber_count(story.id) == 0
