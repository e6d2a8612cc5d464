from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import distinct, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics_hub.models import Company, CompanyPlatformMapping, Platform, UserCompany


@dataclass(frozen=True)
class CompanyMembership:
    company_id: str
    name: str
    role: str


@dataclass(frozen=True)
class AccountMapping:
    company_id: str
    platform: Platform
    account_id: str
    owner_user_id: str
    account_name: str | None = None


def _to_mapping(row: CompanyPlatformMapping) -> AccountMapping:
    return AccountMapping(
        company_id=row.company_id,
        platform=Platform(row.platform),
        account_id=row.account_id,
        owner_user_id=row.owner_user_id,
        account_name=row.account_name,
    )


class AccountMappingRepository:
    """Read side of the company → provider account mapping."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_mapping(self, company_id: str, platform: Platform) -> AccountMapping | None:
        async with self._session_factory() as session:
            row = await session.scalar(
                select(CompanyPlatformMapping).where(
                    CompanyPlatformMapping.company_id == company_id,
                    CompanyPlatformMapping.platform == platform.value,
                )
            )
        return _to_mapping(row) if row else None

    async def list_for_company(self, company_id: str) -> dict[Platform, AccountMapping]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CompanyPlatformMapping).where(CompanyPlatformMapping.company_id == company_id)
            )
            rows = result.scalars().all()
        return {Platform(row.platform): _to_mapping(row) for row in rows}

    async def companies_with_mappings(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(distinct(CompanyPlatformMapping.company_id)))
            return sorted(result.scalars().all())

    async def companies_by_owner(self) -> dict[str, list[str]]:
        """Company ids served by each credential owner."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CompanyPlatformMapping.owner_user_id, CompanyPlatformMapping.company_id).distinct()
            )
            rows = result.all()
        owners: dict[str, list[str]] = {}
        for owner_user_id, company_id in rows:
            owners.setdefault(owner_user_id, []).append(company_id)
        return {owner: sorted(ids) for owner, ids in owners.items()}


class CompanyAccessRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def company_exists(self, company_id: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(Company, company_id) is not None

    async def user_role(self, user_id: str, company_id: str) -> str | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(UserCompany.role).where(
                    UserCompany.user_id == user_id,
                    UserCompany.company_id == company_id,
                )
            )

    async def memberships_for_user(self, user_id: str) -> list[CompanyMembership]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Company.id, Company.name, UserCompany.role)
                .join(UserCompany, UserCompany.company_id == Company.id)
                .where(UserCompany.user_id == user_id)
                .order_by(Company.name)
            )
            return [CompanyMembership(company_id, name, role) for company_id, name, role in result.all()]

    async def memberships_by_user(self) -> dict[str, list[CompanyMembership]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserCompany.user_id, Company.id, Company.name, UserCompany.role)
                .join(Company, UserCompany.company_id == Company.id)
                .order_by(UserCompany.user_id, Company.name)
            )
            rows = result.all()
        users: dict[str, list[CompanyMembership]] = {}
        for user_id, company_id, name, role in rows:
            users.setdefault(user_id, []).append(CompanyMembership(company_id, name, role))
        return users

    async def company_names(self, company_ids: list[str]) -> dict[str, str]:
        if not company_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(select(Company.id, Company.name).where(Company.id.in_(company_ids)))
            return {company_id: name for company_id, name in result.all()}
