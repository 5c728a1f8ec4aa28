"""PortablePackage repository."""

from sqlalchemy.ext.asyncio import AsyncSession

from hoard.db.models.package import PortablePackageRow
from hoard.repositories.base import BaseRepository


class PortablePackageRepository(BaseRepository[PortablePackageRow]):
    def __init__(self, session: AsyncSession):
        super().__init__(session, PortablePackageRow)

    async def get(self, package_id: int) -> PortablePackageRow | None:
        return await self.get_by_id("package_id", package_id)

    async def upsert(
        self,
        package_id: int,
        portable_path: str | None,
        portable_home: str | None,
        portable_config: str | None,
    ) -> PortablePackageRow:
        row = await self.get(package_id)
        if row is None:
            return await self.create(
                package_id=package_id,
                portable_path=portable_path,
                portable_home=portable_home,
                portable_config=portable_config,
            )
        return await self.update(
            row,
            portable_path=portable_path,
            portable_home=portable_home,
            portable_config=portable_config,
        )

    async def delete_for(self, package_ids: list[int]) -> None:
        await self.delete_where_in("package_id", package_ids)
