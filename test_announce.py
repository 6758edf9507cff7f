import json
import logging

import httpx
from pytest_httpx import HTTPXMock

from conftest import BOB, BOB_INBOX, LOCAL_ACTOR
from fediprofile.core.activitypub.announce import (
    AnnounceCoordinator, find_auto_boost_link, mentions_any,
)
from fediprofile.core.activitypub.follow import FollowCoordinator
from fediprofile.core.follow_index import FollowIndex
from fediprofile.models.activitypub import PUBLIC_COLLECTION, Activity, StructuredNote
from fediprofile.models.tables import Link

CAROL = "https://other.example/users/carol"
CAROL_INBOX = "https://other.example/users/carol/inbox"
DAN = "https://third.example/users/dan"
DAN_INBOX = "https://third.example/inbox"


def create_activity(note=None, actor=BOB):
    return Activity.model_validate({
        "id": f"{actor}/statuses/1/activity",
        "type": "Create",
        "actor": actor,
        "object": note or {"id": f"{actor}/statuses/1", "type": "Note", "content": "Hello"},
    })


def badge_note(to=LOCAL_ACTOR):
    return {
        "id": f"{BOB}/statuses/2",
        "type": "Note",
        "name": "Contributor",
        "content": "Awarded for contributions",
        "attributedTo": BOB,
        "to": [to],
        "image": {"type": "Image", "url": "https://remote.example/badges/contributor.png"},
        "icon": {"type": "Image", "url": "https://remote.example/avatar.png"},
        "openbadges:assertion": {"issuedOn": "2024-05-01T00:00:00Z"},
    }


def coordinator(client):
    return AnnounceCoordinator(FollowCoordinator(client))


async def test_announce_document(httpx_mock: HTTPXMock, http, alice):
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    delivered = await coordinator(http).send_announce(create_activity(), alice, LOCAL_ACTOR)

    assert delivered == 1
    announce = json.loads(httpx_mock.get_request().content)
    assert announce["type"] == "Announce"
    assert announce["actor"] == LOCAL_ACTOR
    assert announce["object"] == f"{BOB}/statuses/1/activity"
    assert announce["to"] == [PUBLIC_COLLECTION]
    assert announce["cc"] == [f"{LOCAL_ACTOR}/followers"]
    assert announce["id"].startswith(f"{LOCAL_ACTOR}/announces/")
    assert announce["published"].endswith("Z")


async def test_fan_out_isolates_failures(httpx_mock: HTTPXMock, http, alice, caplog):
    """
    One unreachable inbox does not stop delivery to the others
    """
    await alice.upsert_follower(BOB, "remote.example", inbox=BOB_INBOX)
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    await alice.upsert_follower(DAN, "third.example", inbox=None)
    # same shared inbox twice is delivered once
    await alice.upsert_follower("https://other.example/users/erin", "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_exception(httpx.ConnectError("connection refused"), method="POST", url=BOB_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    with caplog.at_level(logging.WARNING):
        delivered = await coordinator(http).send_announce(create_activity(), alice, LOCAL_ACTOR)

    assert delivered == 1
    assert len(httpx_mock.get_requests()) == 2
    assert any(BOB_INBOX in record.getMessage() for record in caplog.records)


async def test_announce_without_key(httpx_mock: HTTPXMock, http, keyless_alice):
    await keyless_alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)

    assert await coordinator(http).send_announce(create_activity(), keyless_alice, LOCAL_ACTOR) == 0
    assert httpx_mock.get_requests() == []


async def test_announce_needs_create_id(httpx_mock: HTTPXMock, http, alice):
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    create = Activity.model_validate({"type": "Create", "actor": BOB, "object": {"type": "Note"}})

    assert await coordinator(http).send_announce(create, alice, LOCAL_ACTOR) == 0
    assert httpx_mock.get_requests() == []


async def test_create_from_unknown_actor_is_not_relayed(httpx_mock: HTTPXMock, http, alice):
    await alice.save_link("Somebody", "https://elsewhere.example/@somebody", auto_boost=True)
    await alice.save_link("Bob", BOB, auto_boost=False)
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)

    await coordinator(http).handle_create(create_activity(), alice, LOCAL_ACTOR)

    assert httpx_mock.get_requests() == []


async def test_auto_boost_follows_then_announces(httpx_mock: HTTPXMock, http, alice, remote_actor):
    await alice.save_link("Bob", BOB, auto_boost=True, is_activitypub=True)
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="GET", url=BOB, json=remote_actor())
    httpx_mock.add_response(method="POST", url=BOB_INBOX, status_code=202)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    await coordinator(http).handle_create(create_activity(), alice, LOCAL_ACTOR)

    assert json.loads(httpx_mock.get_request(url=BOB_INBOX).content)["type"] == "Follow"
    assert json.loads(httpx_mock.get_request(url=CAROL_INBOX).content)["type"] == "Announce"
    assert await FollowIndex(alice.domain_store).followers_of_actor(BOB) == ["alice"]
    assert (await alice.get_links())[0].following is True


async def test_auto_boost_matches_actor_uri(httpx_mock: HTTPXMock, http, alice):
    await alice.save_link(
        "Bob", "https://remote.example/@bob", auto_boost=True, following=True, actor_ap_uri=BOB + "/"
    )
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    await coordinator(http).handle_create(create_activity(), alice, LOCAL_ACTOR)

    assert len(httpx_mock.get_requests()) == 1


async def test_auto_boost_follow_failure_still_announces(httpx_mock: HTTPXMock, http, alice):
    await alice.save_link("Bob", BOB, auto_boost=True)
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="GET", url=BOB, status_code=404)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    await coordinator(http).handle_create(create_activity(), alice, LOCAL_ACTOR)

    assert json.loads(httpx_mock.get_request(method="POST").content)["type"] == "Announce"
    assert await FollowIndex(alice.domain_store).followers_of_actor(BOB) == []


async def test_badge_is_stored_and_relayed(httpx_mock: HTTPXMock, http, alice):
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    await coordinator(http).handle_create(create_activity(badge_note()), alice, LOCAL_ACTOR)

    badges = await alice.get_received_badges()
    assert len(badges) == 1
    badge = badges[0]
    assert badge.note_id == f"{BOB}/statuses/1/activity"
    assert badge.title == "Contributor"
    assert badge.image == "https://remote.example/badges/contributor.png"
    assert badge.description == "Awarded for contributions"
    assert badge.issued_on == "2024-05-01T00:00:00Z"

    issuers = await alice.get_badge_issuers()
    assert [issuer.actor_url for issuer in issuers] == [BOB]
    assert issuers[0].avatar == "https://remote.example/avatar.png"
    assert badge.issuer_id == issuers[0].id

    assert json.loads(httpx_mock.get_request().content)["type"] == "Announce"


async def test_badge_redelivery_is_idempotent(httpx_mock: HTTPXMock, http, alice):
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    announce = coordinator(http)
    await announce.handle_create(create_activity(badge_note()), alice, LOCAL_ACTOR)
    await announce.handle_create(create_activity(badge_note()), alice, LOCAL_ACTOR)

    assert len(await alice.get_received_badges()) == 1
    assert len(await alice.get_badge_issuers()) == 1


async def test_badge_without_title(http, alice):
    note = badge_note()
    del note["name"]

    stored = await coordinator(http).process_badges(create_activity(note), alice, LOCAL_ACTOR)

    assert stored is True
    assert (await alice.get_received_badges())[0].title == "Unknown Badge"


async def test_badge_for_someone_else_is_ignored(httpx_mock: HTTPXMock, http, alice):
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)

    await coordinator(http).handle_create(
        create_activity(badge_note(to="https://example.com/somebody")), alice, LOCAL_ACTOR
    )

    assert await alice.get_received_badges() == []
    assert httpx_mock.get_requests() == []


async def test_badge_from_auto_boosted_actor_is_relayed_by_both_paths(httpx_mock: HTTPXMock, http, alice):
    """
    Badge ingestion and the auto-boost relay each announce the Create
    """
    await alice.save_link("Bob", BOB, auto_boost=True, following=True)
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    await coordinator(http).handle_create(create_activity(badge_note()), alice, LOCAL_ACTOR)

    announces = [json.loads(request.content) for request in httpx_mock.get_requests()]
    assert [a["type"] for a in announces] == ["Announce", "Announce"]
    assert {a["object"] for a in announces} == {f"{BOB}/statuses/1/activity"}
    assert len(await alice.get_received_badges()) == 1


async def test_badge_for_longer_actor_url_is_ignored(httpx_mock: HTTPXMock, http, alice):
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    note = badge_note(to="https://example.com/alicent")
    note["content"] = '<a href="https://example.com/alicent">@alicent</a> earned a badge'

    stored = await coordinator(http).process_badges(create_activity(note), alice, LOCAL_ACTOR)

    assert stored is False
    assert await alice.get_received_badges() == []
    assert httpx_mock.get_requests() == []


async def test_badge_failure_does_not_block_relay(httpx_mock: HTTPXMock, http, alice, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(alice, "upsert_badge_issuer", broken)
    await alice.save_link("Bob", BOB, auto_boost=True, following=True)
    await alice.upsert_follower(CAROL, "other.example", inbox=CAROL_INBOX)
    httpx_mock.add_response(method="POST", url=CAROL_INBOX, status_code=202)

    await coordinator(http).handle_create(create_activity(badge_note()), alice, LOCAL_ACTOR)

    assert json.loads(httpx_mock.get_request().content)["type"] == "Announce"


def test_mentions_any():
    def note(**data):
        return StructuredNote(data=data)

    targets = [LOCAL_ACTOR]
    assert mentions_any(note(to=[LOCAL_ACTOR + "/"]), targets)
    assert mentions_any(note(cc=LOCAL_ACTOR), targets)
    assert mentions_any(note(tag=[{"type": "Mention", "href": LOCAL_ACTOR}]), targets)
    assert mentions_any(note(content=f'<a href="{LOCAL_ACTOR}">@alice</a>'), targets)
    assert not mentions_any(note(to=[PUBLIC_COLLECTION], content="nothing here"), targets)
    assert not mentions_any(note(to=[LOCAL_ACTOR]), [])


def test_mentions_any_matches_whole_urls():
    def note(content):
        return StructuredNote(data={"content": content})

    targets = [LOCAL_ACTOR, "https://blog.example/"]
    assert mentions_any(note(f'<a href="{LOCAL_ACTOR}/">@alice</a>'), targets)
    assert mentions_any(note(f"Congrats {LOCAL_ACTOR}."), targets)
    assert mentions_any(note('see <a href="https://blog.example">my blog</a>'), targets)
    assert not mentions_any(note('<a href="https://example.com/alicent">@alicent</a>'), targets)
    assert not mentions_any(note(f'<a href="{LOCAL_ACTOR}-bot">bot</a>'), targets)
    assert not mentions_any(note(f'<a href="{LOCAL_ACTOR}/statuses/1">post</a>'), targets)
    assert not mentions_any(note("https://blog.example.org/"), targets)


def test_find_auto_boost_link():
    links = [
        Link(name="Off", url=BOB, auto_boost=False),
        Link(name="Bob", url="https://remote.example/@bob", auto_boost=True, actor_ap_uri=BOB),
    ]
    assert find_auto_boost_link(links, BOB + "/").name == "Bob"
    assert find_auto_boost_link(links, CAROL) is None
