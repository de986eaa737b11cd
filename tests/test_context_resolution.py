from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from financy import crud
from financy.context_resolution import ContextResolver
from financy.domain.entities import ContextInfo
from financy.models import MemberStatus


def _chat(chat_id: int, chat_type: str, title: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(id=chat_id, type=chat_type, title=title)


@pytest.fixture
def resolver(repository):
    return ContextResolver(repository, default_currency="USD")


@pytest.fixture
def other_user(session_factory):
    with session_factory() as db:
        return crud.create_user(db, name="Caio", telegram_user_id="77")


@pytest.mark.anyio
async def test_private_chat_maps_to_personal_context(resolver, repository, user):
    context_id = await resolver.resolve_context(_chat(42, "private"), user.id)

    info = await resolver.context_info(context_id)
    assert info.type == "personal"
    assert await repository.mapped_context_id(42, "private") == context_id
    assert await resolver.resolve_context(_chat(42, "private"), user.id) == context_id


@pytest.mark.anyio
@pytest.mark.parametrize(("chat_type", "context_type"), [("group", "family"), ("supergroup", "shared")])
async def test_unmapped_group_gets_its_own_context(resolver, repository, user, chat_type, context_type):
    context_id = await resolver.resolve_context(_chat(-500, chat_type, "Apartment 4B"), user.id)

    info = await resolver.context_info(context_id)
    assert info.name == "Apartment 4B"
    assert info.type == context_type
    assert await repository.membership_role(user.id, context_id) == "admin"
    assert await repository.mapped_context_id(-500, chat_type) == context_id


@pytest.mark.anyio
async def test_new_group_member_joins_mapped_context(resolver, repository, user, other_user):
    context_id = await resolver.resolve_context(_chat(-500, "group", "Apartment 4B"), user.id)

    assert await resolver.resolve_context(_chat(-500, "group", "Apartment 4B"), other_user.id) == context_id
    assert await repository.membership_role(other_user.id, context_id) == "member"


@pytest.mark.anyio
async def test_unsupported_chat_falls_back_to_personal(resolver, repository, user):
    context_id = await resolver.resolve_context(_chat(-9, "channel", "News"), user.id)

    assert context_id == (await repository.ensure_personal_context(user.id)).id


@pytest.mark.anyio
async def test_storage_failure_falls_back_to_personal():
    repo = MagicMock()
    repo.mapped_context_id = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
    repo.ensure_personal_context = AsyncMock(
        return_value=ContextInfo(id=3, name="Personal", type="personal", default_currency="USD", transaction_permissions="everyone")
    )

    assert await ContextResolver(repo).resolve_context(_chat(-1, "group", "G"), 1) == 3


@pytest.mark.anyio
async def test_total_failure_resolves_to_none():
    error = OperationalError("SELECT", {}, Exception("down"))
    repo = MagicMock()
    repo.mapped_context_id = AsyncMock(side_effect=error)
    repo.ensure_personal_context = AsyncMock(side_effect=error)

    assert await ContextResolver(repo).resolve_context(_chat(-1, "group", "G"), 1) is None


@pytest.mark.anyio
async def test_private_and_unmapped_chats_allow_transactions(resolver, user):
    assert await resolver.can_add_transactions(_chat(42, "private"), user.id)
    assert await resolver.can_add_transactions(_chat(-600, "group", "New"), user.id)


@pytest.mark.anyio
async def test_admin_only_context_rejects_plain_members(resolver, repository, user, other_user):
    info = await repository.setup_group_context(
        user_id=user.id,
        chat_id=-700,
        chat_type="group",
        name="Startup",
        context_type="business",
        default_currency="USD",
        permissions="admins",
    )
    await repository.grant_membership(other_user.id, info.id, "member")
    chat = _chat(-700, "group", "Startup")

    assert await resolver.can_add_transactions(chat, user.id)
    assert not await resolver.can_add_transactions(chat, other_user.id)


@pytest.mark.anyio
async def test_newcomers_depend_on_policy(resolver, repository, user, other_user):
    for chat_id, policy in ((-800, "everyone"), (-801, "admins")):
        await repository.setup_group_context(
            user_id=user.id,
            chat_id=chat_id,
            chat_type="group",
            name=f"Group {policy}",
            context_type="friends",
            default_currency="USD",
            permissions=policy,
        )

    assert await resolver.can_add_transactions(_chat(-800, "group"), other_user.id)
    assert not await resolver.can_add_transactions(_chat(-801, "group"), other_user.id)


@pytest.mark.anyio
async def test_members_who_left_are_refused(resolver, repository, session_factory, user, other_user):
    info = await repository.setup_group_context(
        user_id=user.id,
        chat_id=-900,
        chat_type="group",
        name="Roommates",
        context_type="shared_living",
        default_currency="USD",
        permissions="everyone",
    )
    await repository.grant_membership(other_user.id, info.id)
    with session_factory() as db:
        membership = crud.get_membership(db, info.id, other_user.id)
        membership.status = MemberStatus.LEFT
        db.commit()

    assert not await resolver.can_add_transactions(_chat(-900, "group"), other_user.id)
