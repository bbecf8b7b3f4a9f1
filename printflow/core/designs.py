"""
Design version store.

Designs are customizations of a template. Params are canonicalized and
hashed (CRC32) so an identical resubmission can reuse an already rendered
design instead of paying for another render.
"""
import json
import uuid
import zlib
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.core.errors import InvalidParams, NotFoundError, ValidationError
from printflow.database.connection import get_session_factory
from printflow.database.models import Design, DesignStatus, Template, User, utc_now

logger = structlog.get_logger(__name__)

_PARAM_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}

DESIGN_TRANSITIONS: Dict[DesignStatus, frozenset] = {
    DesignStatus.DRAFT: frozenset({DesignStatus.QUEUED}),
    DesignStatus.QUEUED: frozenset({DesignStatus.RENDERING, DesignStatus.DRAFT}),
    DesignStatus.RENDERING: frozenset(
        {DesignStatus.READY, DesignStatus.FAILED, DesignStatus.QUEUED, DesignStatus.DRAFT}
    ),
    DesignStatus.FAILED: frozenset({DesignStatus.QUEUED}),
    DesignStatus.READY: frozenset(),
}


def canonicalize_params(params: Mapping[str, Any]) -> str:
    """Stable serialization: sorted keys, no insignificant whitespace."""
    return json.dumps(params, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def params_crc32(params: Mapping[str, Any]) -> str:
    """8-character hex CRC32 of the canonical params."""
    return f"{zlib.crc32(canonicalize_params(params).encode('utf-8')) & 0xFFFFFFFF:08x}"


def _is_type(value: Any, type_name: str) -> bool:
    expected = _PARAM_TYPES.get(type_name)
    if expected is None:
        return True
    if isinstance(value, bool) and bool not in expected:
        return False
    return isinstance(value, expected)


def _box(data: Any, name: str) -> Optional[tuple]:
    if data is None:
        return None
    try:
        x, y = data.get("x", 0), data.get("y", 0)
        return (x, y, x + data["width"], y + data["height"])
    except (AttributeError, KeyError, TypeError):
        raise InvalidParams(f"{name} must have numeric x, y, width and height", field=name)


def _contains(outer: tuple, inner: tuple) -> bool:
    return (
        inner[0] >= outer[0]
        and inner[1] >= outer[1]
        and inner[2] <= outer[2]
        and inner[3] <= outer[3]
    )


def validate_params(params: Any, template_data: Mapping[str, Any]) -> bool:
    """
    Check params against a template's parameter schema.

    Returns:
        bool: True when an element leaves the safe area (advisory only)

    Raises:
        InvalidParams: When params break a hard rule of the schema
    """
    if not isinstance(params, dict):
        raise InvalidParams("params must be an object", field="params")

    rules: Mapping[str, Any] = template_data.get("params", {}) or {}
    for name, rule in rules.items():
        if name not in params:
            if rule.get("required", False):
                raise InvalidParams(f"Missing required param {name!r}", field=name)
            continue
        value = params[name]
        type_name = rule.get("type")
        if type_name and not _is_type(value, type_name):
            raise InvalidParams(f"Param {name!r} must be of type {type_name}", field=name)
        if "enum" in rule and value not in rule["enum"]:
            raise InvalidParams(f"Param {name!r} must be one of {rule['enum']}", field=name)
        if "max_length" in rule and isinstance(value, str) and len(value) > rule["max_length"]:
            raise InvalidParams(f"Param {name!r} exceeds {rule['max_length']} characters", field=name)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if "min" in rule and value < rule["min"]:
                raise InvalidParams(f"Param {name!r} must be >= {rule['min']}", field=name)
            if "max" in rule and value > rule["max"]:
                raise InvalidParams(f"Param {name!r} must be <= {rule['max']}", field=name)

    if not template_data.get("allow_additional_params", True):
        unknown = sorted(set(params) - set(rules) - {"elements"})
        if unknown:
            raise InvalidParams(f"Unknown params: {unknown}", field="params")

    elements = params.get("elements", [])
    if not isinstance(elements, list):
        raise InvalidParams("elements must be a list", field="elements")

    canvas = _box(template_data.get("canvas"), "canvas")
    safe_area = _box(template_data.get("safe_area"), "safe_area")
    warning = False
    for index, element in enumerate(elements):
        box = _box(element, f"elements[{index}]")
        if canvas is not None and not _contains(canvas, box):
            raise InvalidParams(f"elements[{index}] lies outside the canvas", field="elements")
        if safe_area is not None and not _contains(safe_area, box):
            warning = True
    return warning


def transition_design(design: Design, target: DesignStatus) -> bool:
    """
    Move a design along the status table.

    Returns False (and leaves the design alone) when the move is not allowed.
    """
    if target == design.status:
        return True
    if target not in DESIGN_TRANSITIONS[design.status]:
        logger.warning(
            "design_transition_rejected",
            design_id=str(design.id),
            from_status=design.status.value,
            to_status=target.value,
        )
        return False
    design.status = target
    design.updated_at = utc_now()
    return True


@dataclass(frozen=True)
class DesignResult:
    design: Design
    created: bool


class DesignStore:
    """Creates and looks up design versions."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or get_session_factory()

    async def create_design(
        self,
        user_id: uuid.UUID,
        template_id: uuid.UUID,
        params: Dict[str, Any],
        parent_design_id: Optional[uuid.UUID] = None,
        name: Optional[str] = None,
    ) -> DesignResult:
        """
        Create a draft design, or return the ready design with identical params.

        Args:
            user_id: Owning user
            template_id: Template being customized
            params: Customization parameters
            parent_design_id: Design this one is a new version of
            name: Optional display name

        Returns:
            DesignResult: The design and whether it was newly created

        Raises:
            NotFoundError: Unknown user, template or parent design
            InvalidParams: Params violate the template schema
            ValidationError: Inactive template or a parent owned by someone else
        """
        async with self.session_factory() as session, session.begin():
            if await session.get(User, user_id) is None:
                raise NotFoundError("User", user_id)
            template = await session.get(Template, template_id)
            if template is None:
                raise NotFoundError("Template", template_id)
            if not template.is_active:
                raise ValidationError(f"Template {template_id} is not active", field="template_id")

            safe_area_warning = validate_params(params, template.template_data or {})
            canonical = canonicalize_params(params)
            crc = params_crc32(params)

            existing = await self._find_ready_duplicate(session, user_id, template_id, crc, canonical)
            if existing is not None:
                logger.info(
                    "design_deduplicated",
                    design_id=str(existing.id),
                    params_crc32=crc,
                )
                return DesignResult(design=existing, created=False)

            version = 1
            if parent_design_id is not None:
                parent = await session.get(Design, parent_design_id)
                if parent is None:
                    raise NotFoundError("Design", parent_design_id)
                if parent.user_id != user_id or parent.template_id != template_id:
                    raise ValidationError(
                        "Parent design must belong to the same user and template",
                        field="parent_design_id",
                    )
                version = parent.version + 1

            now = utc_now()
            design = Design(
                id=uuid.uuid4(),
                user_id=user_id,
                template_id=template_id,
                original_design_id=parent_design_id,
                name=name,
                version=version,
                params=json.loads(canonical),
                params_crc32=crc,
                safe_area_warning=safe_area_warning,
                status=DesignStatus.DRAFT,
                created_at=now,
                updated_at=now,
            )
            session.add(design)

        logger.info(
            "design_created",
            design_id=str(design.id),
            version=version,
            params_crc32=crc,
            safe_area_warning=safe_area_warning,
        )
        return DesignResult(design=design, created=True)

    @staticmethod
    async def _find_ready_duplicate(
        session: AsyncSession,
        user_id: uuid.UUID,
        template_id: uuid.UUID,
        crc: str,
        canonical: str,
    ) -> Optional[Design]:
        stmt = (
            select(Design)
            .where(
                Design.user_id == user_id,
                Design.template_id == template_id,
                Design.params_crc32 == crc,
                Design.status == DesignStatus.READY,
            )
            .order_by(Design.version.desc())
        )
        for candidate in (await session.execute(stmt)).scalars():
            # CRC32 can collide; only identical params count as a duplicate
            if canonicalize_params(candidate.params) == canonical:
                return candidate
        return None

    async def get_design(self, design_id: uuid.UUID) -> Design:
        async with self.session_factory() as session:
            design = await session.get(Design, design_id)
        if design is None:
            raise NotFoundError("Design", design_id)
        return design

    async def lineage(self, design_id: uuid.UUID) -> List[Design]:
        """Return the version chain ending at ``design_id``, oldest first."""
        chain: List[Design] = []
        async with self.session_factory() as session:
            current = await session.get(Design, design_id)
            if current is None:
                raise NotFoundError("Design", design_id)
            while current is not None:
                if chain and current.version >= chain[-1].version:
                    raise ValidationError(f"Lineage of design {design_id} is not strictly versioned")
                chain.append(current)
                if current.original_design_id is None:
                    break
                current = await session.get(Design, current.original_design_id)
        chain.reverse()
        return chain
