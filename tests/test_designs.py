"""
Tests for design versioning, params validation and deduplication.
"""
import re
import uuid

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.core.designs import (
    DesignStore,
    canonicalize_params,
    params_crc32,
    transition_design,
    validate_params,
)
from printflow.core.errors import InvalidParams, NotFoundError, ValidationError
from printflow.core.users import UserDirectory
from printflow.database.models import Design, DesignStatus, Template, User

from .conftest import TEMPLATE_DATA


async def _mark_ready(session_factory: async_sessionmaker[AsyncSession], design_id: uuid.UUID) -> None:
    async with session_factory() as session, session.begin():
        design = await session.get(Design, design_id)
        design.status = DesignStatus.READY


class TestCanonicalParams:

    @pytest.mark.unit
    def test_key_order_does_not_matter(self) -> None:
        a = {"color": "red", "text": "Hi", "nested": {"b": 1, "a": 2}}
        b = {"nested": {"a": 2, "b": 1}, "text": "Hi", "color": "red"}

        assert canonicalize_params(a) == canonicalize_params(b)
        assert params_crc32(a) == params_crc32(b)

    @pytest.mark.unit
    def test_canonical_form(self) -> None:
        assert canonicalize_params({"b": 1, "a": "é"}) == '{"a":"é","b":1}'

    @pytest.mark.unit
    def test_crc32_is_eight_hex_chars(self) -> None:
        assert re.fullmatch(r"[0-9a-f]{8}", params_crc32({"color": "red"}))
        assert re.fullmatch(r"[0-9a-f]{8}", params_crc32({}))

    @pytest.mark.unit
    def test_different_params_different_crc(self) -> None:
        assert params_crc32({"color": "red"}) != params_crc32({"color": "blue"})


class TestValidateParams:

    @pytest.mark.unit
    def test_valid_params(self) -> None:
        assert validate_params({"color": "red", "text": "Hello", "font_size": 12}, TEMPLATE_DATA) is False

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "params",
        [
            {},
            {"color": "green"},
            {"color": 1},
            {"color": "red", "text": "x" * 21},
            {"color": "red", "font_size": 4},
            {"color": "red", "font_size": 100},
            {"color": "red", "font_size": True},
            {"color": "red", "font_size": "12"},
            {"color": "red", "elements": "not-a-list"},
        ],
    )
    def test_rejects(self, params: dict) -> None:
        with pytest.raises(InvalidParams):
            validate_params(params, TEMPLATE_DATA)

    @pytest.mark.unit
    def test_rejects_non_object(self) -> None:
        with pytest.raises(InvalidParams):
            validate_params(["red"], TEMPLATE_DATA)

    @pytest.mark.unit
    def test_element_outside_canvas(self) -> None:
        params = {"color": "red", "elements": [{"x": 900, "y": 0, "width": 200, "height": 50}]}

        with pytest.raises(InvalidParams):
            validate_params(params, TEMPLATE_DATA)

    @pytest.mark.unit
    def test_element_outside_safe_area_warns(self) -> None:
        params = {"color": "red", "elements": [{"x": 10, "y": 10, "width": 100, "height": 100}]}

        assert validate_params(params, TEMPLATE_DATA) is True

    @pytest.mark.unit
    def test_element_inside_safe_area(self) -> None:
        params = {"color": "red", "elements": [{"x": 100, "y": 100, "width": 200, "height": 200}]}

        assert validate_params(params, TEMPLATE_DATA) is False

    @pytest.mark.unit
    def test_element_without_size(self) -> None:
        with pytest.raises(InvalidParams):
            validate_params({"color": "red", "elements": [{"x": 1}]}, TEMPLATE_DATA)

    @pytest.mark.unit
    def test_additional_params(self) -> None:
        strict = {**TEMPLATE_DATA, "allow_additional_params": False}

        assert validate_params({"color": "red", "extra": 1}, TEMPLATE_DATA) is False
        with pytest.raises(InvalidParams):
            validate_params({"color": "red", "extra": 1}, strict)


class TestTransitionDesign:

    @pytest.mark.unit
    def test_allowed_transition(self) -> None:
        design = Design(id=uuid.uuid4(), status=DesignStatus.DRAFT)

        assert transition_design(design, DesignStatus.QUEUED) is True
        assert design.status == DesignStatus.QUEUED

    @pytest.mark.unit
    def test_rejected_transition(self) -> None:
        design = Design(id=uuid.uuid4(), status=DesignStatus.DRAFT)

        assert transition_design(design, DesignStatus.READY) is False
        assert design.status == DesignStatus.DRAFT

    @pytest.mark.unit
    def test_ready_is_final(self) -> None:
        design = Design(id=uuid.uuid4(), status=DesignStatus.READY)

        for target in (DesignStatus.DRAFT, DesignStatus.QUEUED, DesignStatus.FAILED):
            assert transition_design(design, target) is False
        assert transition_design(design, DesignStatus.READY) is True


class TestDesignStore:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_draft(self, designs: DesignStore, user: User, template: Template) -> None:
        result = await designs.create_design(user.id, template.id, {"text": "Hi", "color": "red"})

        design = result.design
        assert result.created is True
        assert design.status == DesignStatus.DRAFT
        assert design.version == 1
        assert design.original_design_id is None
        assert design.params_crc32 == params_crc32({"color": "red", "text": "Hi"})
        assert design.safe_area_warning is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_safe_area_warning_is_stored(
        self, designs: DesignStore, user: User, template: Template
    ) -> None:
        params = {"color": "red", "elements": [{"x": 0, "y": 0, "width": 10, "height": 10}]}

        result = await designs.create_design(user.id, template.id, params)

        assert result.design.safe_area_warning is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_drafts_are_not_deduplicated(
        self, designs: DesignStore, user: User, template: Template
    ) -> None:
        first = await designs.create_design(user.id, template.id, {"color": "red"})
        second = await designs.create_design(user.id, template.id, {"color": "red"})

        assert second.created is True
        assert second.design.id != first.design.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_identical_ready_design_is_reused(
        self,
        designs: DesignStore,
        session_factory: async_sessionmaker[AsyncSession],
        user: User,
        template: Template,
    ) -> None:
        first = await designs.create_design(user.id, template.id, {"color": "red", "text": "Hi"})
        await _mark_ready(session_factory, first.design.id)

        second = await designs.create_design(user.id, template.id, {"text": "Hi", "color": "red"})

        assert second.created is False
        assert second.design.id == first.design.id
        assert second.design.status == DesignStatus.READY

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ready_design_of_other_user_is_not_reused(
        self,
        designs: DesignStore,
        users: UserDirectory,
        session_factory: async_sessionmaker[AsyncSession],
        user: User,
        template: Template,
    ) -> None:
        first = await designs.create_design(user.id, template.id, {"color": "red"})
        await _mark_ready(session_factory, first.design.id)
        other = (await users.register_user("hanako@example.com", "Hanako")).user

        result = await designs.create_design(other.id, template.id, {"color": "red"})

        assert result.created is True
        assert result.design.id != first.design.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_version_and_lineage(
        self, designs: DesignStore, user: User, template: Template
    ) -> None:
        v1 = (await designs.create_design(user.id, template.id, {"color": "red"})).design
        v2 = (
            await designs.create_design(
                user.id, template.id, {"color": "blue"}, parent_design_id=v1.id
            )
        ).design
        v3 = (
            await designs.create_design(
                user.id, template.id, {"color": "black"}, parent_design_id=v2.id
            )
        ).design

        assert v2.version == 2
        assert v2.original_design_id == v1.id
        assert v3.version == 3

        chain = await designs.lineage(v3.id)
        assert [d.id for d in chain] == [v1.id, v2.id, v3.id]
        assert [d.version for d in chain] == [1, 2, 3]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parent_of_other_user_rejected(
        self,
        designs: DesignStore,
        users: UserDirectory,
        user: User,
        template: Template,
    ) -> None:
        parent = (await designs.create_design(user.id, template.id, {"color": "red"})).design
        other = (await users.register_user("hanako@example.com", "Hanako")).user

        with pytest.raises(ValidationError):
            await designs.create_design(
                other.id, template.id, {"color": "blue"}, parent_design_id=parent.id
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_references(
        self, designs: DesignStore, user: User, template: Template
    ) -> None:
        with pytest.raises(NotFoundError):
            await designs.create_design(uuid.uuid4(), template.id, {"color": "red"})
        with pytest.raises(NotFoundError):
            await designs.create_design(user.id, uuid.uuid4(), {"color": "red"})
        with pytest.raises(NotFoundError):
            await designs.create_design(
                user.id, template.id, {"color": "red"}, parent_design_id=uuid.uuid4()
            )
        with pytest.raises(NotFoundError):
            await designs.get_design(uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_template_rejected(
        self,
        designs: DesignStore,
        session_factory: async_sessionmaker[AsyncSession],
        user: User,
        template: Template,
    ) -> None:
        async with session_factory() as session, session.begin():
            stored = await session.get(Template, template.id)
            stored.is_active = False

        with pytest.raises(ValidationError):
            await designs.create_design(user.id, template.id, {"color": "red"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_params_persist_nothing(
        self, designs: DesignStore, user: User, template: Template
    ) -> None:
        with pytest.raises(InvalidParams):
            await designs.create_design(user.id, template.id, {"color": "green"})

        result = await designs.create_design(user.id, template.id, {"color": "red"})
        assert result.design.version == 1
