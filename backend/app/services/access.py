"""
Access evaluation.

compute_access_mode() is a pure function of an AccessContext; the context is
prefetched from the database by load_access_context() so the rule set can be
tested without a session.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    AccessMode,
    Collaboration,
    DeployKey,
    OrgUser,
    PublicKey,
    Repository,
    RepoUnit,
    Team,
    TeamRepo,
    TeamUser,
    UnitType,
    User,
)

logger = logging.getLogger(__name__)


@dataclass
class AccessContext:
    repo: Repository
    owner: User
    actor: User | None = None
    is_org_owner: bool = False
    team_modes: list[AccessMode] = field(default_factory=list)
    collaborator_mode: AccessMode | None = None
    # None means every unit is enabled
    units: set[UnitType] | None = None


def compute_access_mode(ctx: AccessContext) -> AccessMode:
    """Effective mode of ctx.actor on ctx.repo. The strongest grant wins."""
    if ctx.repo.is_private:
        mode = AccessMode.NONE
    else:
        mode = AccessMode.READ

    actor = ctx.actor
    if actor is None:
        return mode

    if actor.is_admin:
        return AccessMode.OWNER
    if actor.id == ctx.repo.owner_id:
        return AccessMode.OWNER
    if ctx.owner.is_organization and ctx.is_org_owner:
        return AccessMode.OWNER

    for team_mode in ctx.team_modes:
        mode = max(mode, AccessMode(team_mode))
    if ctx.collaborator_mode is not None:
        mode = max(mode, AccessMode(ctx.collaborator_mode))
    return mode


def unit_enabled(ctx: AccessContext, unit: UnitType | None) -> bool:
    if unit is None or ctx.units is None:
        return True
    return unit in ctx.units


def access_mode_for_unit(ctx: AccessContext, unit: UnitType | None = None) -> AccessMode:
    """Like compute_access_mode(), but a disabled unit reduces every actor to NONE."""
    if not unit_enabled(ctx, unit):
        return AccessMode.NONE
    return compute_access_mode(ctx)


def has_access(ctx: AccessContext, required: AccessMode, unit: UnitType | None = None) -> bool:
    return access_mode_for_unit(ctx, unit) >= required


def deploy_key_mode(key: PublicKey, binding: DeployKey | None, repo: Repository) -> AccessMode:
    """Mode a deploy key grants on ``repo``: its cap when bound to it, NONE otherwise."""
    if not key.is_deploy_key or binding is None or binding.repo_id != repo.id:
        return AccessMode.NONE
    return min(AccessMode(binding.mode), AccessMode.WRITE)


async def load_access_context(session: AsyncSession, actor: User | None, repo: Repository) -> AccessContext:
    owner = await session.get(User, repo.owner_id)
    ctx = AccessContext(repo=repo, owner=owner, actor=actor)

    unit_rows = (await session.execute(select(RepoUnit.type).where(RepoUnit.repo_id == repo.id))).scalars().all()
    if unit_rows:
        ctx.units = {UnitType(t) for t in unit_rows}

    if actor is None:
        return ctx

    if owner is not None and owner.is_organization:
        org_user = (
            await session.execute(
                select(OrgUser).where(OrgUser.org_id == owner.id, OrgUser.uid == actor.id)
            )
        ).scalar_one_or_none()
        ctx.is_org_owner = bool(org_user and org_user.is_owner)

        result = await session.execute(
            select(Team.authorize)
            .join(TeamUser, TeamUser.team_id == Team.id)
            .join(TeamRepo, TeamRepo.team_id == Team.id)
            .where(TeamUser.uid == actor.id, TeamRepo.repo_id == repo.id)
        )
        ctx.team_modes = [AccessMode(m) for m in result.scalars().all()]

        # Members of the owners team own every repository of the organization
        owner_team = await session.execute(
            select(Team.id)
            .join(TeamUser, TeamUser.team_id == Team.id)
            .where(Team.org_id == owner.id, Team.authorize == AccessMode.OWNER, TeamUser.uid == actor.id)
        )
        if owner_team.first() is not None:
            ctx.is_org_owner = True

    collab_mode = (
        await session.execute(
            select(Collaboration.mode).where(Collaboration.repo_id == repo.id, Collaboration.user_id == actor.id)
        )
    ).scalar_one_or_none()
    if collab_mode is not None:
        ctx.collaborator_mode = AccessMode(collab_mode)

    return ctx


async def access_level(session: AsyncSession, actor: User | None, repo: Repository) -> AccessMode:
    ctx = await load_access_context(session, actor, repo)
    return compute_access_mode(ctx)


async def user_has_access(
    session: AsyncSession,
    actor: User | None,
    repo: Repository,
    required: AccessMode,
    unit: UnitType | None = None,
) -> bool:
    ctx = await load_access_context(session, actor, repo)
    return has_access(ctx, required, unit)
