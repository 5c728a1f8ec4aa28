"""Package repository."""

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoard.db.models.package import PackageRow
from hoard.repositories.base import BaseRepository


class PackageRepository(BaseRepository[PackageRow]):
    def __init__(self, session: AsyncSession):
        super().__init__(session, PackageRow)

    async def get(self, package_id: int) -> PackageRow | None:
        return await self.get_by_id("id", package_id)

    async def list_installed(self, profile: str | None = None) -> list[PackageRow]:
        conditions = [PackageRow.is_installed.is_(True)]
        if profile:
            conditions.append(PackageRow.profile == profile)
        stmt = (
            select(PackageRow)
            .where(*conditions)
            .order_by(PackageRow.profile, PackageRow.pkg_name, PackageRow.repo_name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_all(self) -> list[PackageRow]:
        result = await self.session.execute(select(PackageRow).order_by(PackageRow.id))
        return list(result.scalars().all())

    async def get_installed(self, repo_name: str, pkg_id: str, profile: str) -> PackageRow | None:
        """The active row for one (repo, pkg_id, profile) identity."""
        stmt = (
            select(PackageRow)
            .where(
                PackageRow.repo_name == repo_name,
                PackageRow.pkg_id == pkg_id,
                PackageRow.profile == profile,
                PackageRow.is_installed.is_(True),
            )
            .order_by(PackageRow.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_installed(
        self,
        name: str,
        profile: str | None = None,
        repo_name: str | None = None,
    ) -> list[PackageRow]:
        """Active rows whose pkg_id or pkg_name equals *name*.

        Identifier matches take precedence: rows matched by name are only
        returned when no row matches by identifier.
        """
        base = [PackageRow.is_installed.is_(True)]
        if profile:
            base.append(PackageRow.profile == profile)
        if repo_name:
            base.append(PackageRow.repo_name == repo_name)

        for column in (PackageRow.pkg_id, PackageRow.pkg_name):
            stmt = select(PackageRow).where(*base, column == name).order_by(PackageRow.id)
            rows = list((await self.session.execute(stmt)).scalars().all())
            if rows:
                return rows

        stmt = (
            select(PackageRow)
            .where(*base, or_(func.lower(PackageRow.pkg_id) == name.lower(), func.lower(PackageRow.pkg_name) == name.lower()))
            .order_by(PackageRow.id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_family(self, family_id: str) -> list[PackageRow]:
        stmt = select(PackageRow).where(PackageRow.family_id == family_id).order_by(PackageRow.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_superseded(self) -> list[PackageRow]:
        """Rows soft-deleted by an upgrade whose cleanup never finished."""
        stmt = select(PackageRow).where(PackageRow.is_installed.is_(False)).order_by(PackageRow.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def pinned_keys(self, profile: str) -> set[tuple[str, str]]:
        """(repo_name, pkg_id) of every pinned, installed package in *profile*."""
        stmt = select(PackageRow.repo_name, PackageRow.pkg_id).where(
            PackageRow.profile == profile,
            PackageRow.pinned.is_(True),
            PackageRow.is_installed.is_(True),
        )
        result = await self.session.execute(stmt)
        return {(repo, pkg_id) for repo, pkg_id in result.all()}

    async def delete(self, package_ids: list[int]) -> None:
        await self.delete_where_in("id", package_ids)
