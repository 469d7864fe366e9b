"""
Unit tests for user, role, provider account and content DAOs.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from billing_sync.dao.content import BookingDAO, PostDAO
from billing_sync.dao.provider_account import ProviderAccountDAO
from billing_sync.dao.user import RoleAssignmentDAO, UserDAO
from billing_sync.models.content import BookingStatus, PostStatus
from billing_sync.models.user import RoleName
from tests.factories import (
    BookingFactory,
    NotificationFactory,
    PostFactory,
    ProviderAccountFactory,
    UserFactory,
)


class TestRoleAssignmentDAO:
    """Tests for role rows."""

    @pytest.mark.asyncio
    async def test_ensure_role_creates_once(self, db_session: AsyncSession):
        user = await UserFactory.create(db_session)
        dao = RoleAssignmentDAO(db_session)

        assert await dao.ensure_role(user.id, RoleName.PUBLISHER) is True
        assert await dao.ensure_role(user.id, RoleName.PUBLISHER) is False

        roles = await dao.get_active_role_names(user.id)
        assert roles == [RoleName.CLIENT, RoleName.PUBLISHER]

    @pytest.mark.asyncio
    async def test_deactivate_then_reactivate_keeps_row(self, db_session: AsyncSession):
        """
        Test reactivation reuses the original assignment.

        WHY: Roles are deactivated rather than deleted to keep history.
        """
        user = await UserFactory.create_publisher(db_session)
        dao = RoleAssignmentDAO(db_session)
        original = await dao.get_assignment(user.id, RoleName.PUBLISHER)

        assert await dao.deactivate_role(user.id, RoleName.PUBLISHER) is True
        assert await dao.deactivate_role(user.id, RoleName.PUBLISHER) is False
        assert RoleName.PUBLISHER not in await dao.get_active_role_names(user.id)

        assert await dao.ensure_role(user.id, RoleName.PUBLISHER, assigned_by="resolver") is True
        reactivated = await dao.get_assignment(user.id, RoleName.PUBLISHER)
        assert reactivated.id == original.id
        assert reactivated.assigned_by == "resolver"

    @pytest.mark.asyncio
    async def test_delete_by_user(self, db_session: AsyncSession):
        user = await UserFactory.create_publisher(db_session)
        dao = RoleAssignmentDAO(db_session)

        assert await dao.delete_by_user(user.id) == 2
        assert await dao.delete_by_user(user.id) == 0


class TestUserDAO:
    @pytest.mark.asyncio
    async def test_get_by_email_is_case_insensitive_on_input(self, db_session: AsyncSession):
        user = await UserFactory.create(db_session, email="ana@example.com")

        found = await UserDAO(db_session).get_by_email("Ana@Example.com")

        assert found.id == user.id

    @pytest.mark.asyncio
    async def test_delete_missing_user_is_not_an_error(self, db_session: AsyncSession):
        assert await UserDAO(db_session).delete(9999) is False


class TestProviderAccountDAO:
    """Tests for the one-active-link rule."""

    @pytest.mark.asyncio
    async def test_link_account_deactivates_previous(self, db_session: AsyncSession, encryption):
        user = await UserFactory.create(db_session)
        first = await ProviderAccountFactory.create(db_session, user, encryption)
        dao = ProviderAccountDAO(db_session)

        second = await dao.link_account(
            user.id,
            provider_user_id="999",
            access_token_encrypted=encryption.encrypt("new-token"),
        )
        await db_session.commit()

        active = await dao.get_active_for_user(user.id)
        assert active.id == second.id
        await db_session.refresh(first)
        assert first.is_active is False
        assert await dao.count(user_id=user.id, is_active=True) == 1

    @pytest.mark.asyncio
    async def test_deactivate_all_for_user(self, db_session: AsyncSession, encryption):
        user = await UserFactory.create(db_session)
        await ProviderAccountFactory.create(db_session, user, encryption)
        dao = ProviderAccountDAO(db_session)

        assert await dao.deactivate_all_for_user(user.id) == 1
        assert await dao.get_active_for_user(user.id) is None


class TestContentDAO:
    """Tests for quota counters."""

    @pytest.mark.asyncio
    async def test_count_quota_posts(self, db_session: AsyncSession):
        user = await UserFactory.create_publisher(db_session)
        await PostFactory.create(db_session, user, status=PostStatus.PUBLISHED)
        await PostFactory.create(db_session, user, status=PostStatus.DRAFT)
        await PostFactory.create(db_session, user, status=PostStatus.ARCHIVED)

        assert await PostDAO(db_session).count_quota_posts(user.id) == 2

    @pytest.mark.asyncio
    async def test_deactivate_published(self, db_session: AsyncSession):
        user = await UserFactory.create_publisher(db_session)
        published = await PostFactory.create(db_session, user, status=PostStatus.PUBLISHED)
        draft = await PostFactory.create(db_session, user, status=PostStatus.DRAFT)

        count = await PostDAO(db_session).deactivate_published(user.id, "subscription_expired")
        await db_session.commit()

        assert count == 1
        await db_session.refresh(published)
        await db_session.refresh(draft)
        assert published.status == PostStatus.INACTIVE
        assert published.deactivation_reason == "subscription_expired"
        assert draft.status == PostStatus.DRAFT

    @pytest.mark.asyncio
    async def test_count_open_for_publisher(self, db_session: AsyncSession):
        publisher = await UserFactory.create_publisher(db_session)
        client = await UserFactory.create(db_session)
        post = await PostFactory.create(db_session, publisher)
        await BookingFactory.create(db_session, client, post, publisher, status=BookingStatus.PENDING)
        await BookingFactory.create(db_session, client, post, publisher, status=BookingStatus.CONFIRMED)
        await BookingFactory.create(db_session, client, post, publisher, status=BookingStatus.COMPLETED)

        assert await BookingDAO(db_session).count_open_for_publisher(publisher.id) == 2
        assert len(await BookingDAO(db_session).get_involving_user(client.id)) == 3

    @pytest.mark.asyncio
    async def test_get_by_user_requires_owner_column(self, db_session: AsyncSession):
        user = await UserFactory.create(db_session)
        await NotificationFactory.create(db_session, user)

        with pytest.raises(AttributeError):
            await UserDAO(db_session).get_by_user(user.id)
