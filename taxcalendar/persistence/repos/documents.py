from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxcalendar.domain.models import Document


async def get_document(session: AsyncSession, organization_id: str, document_id: str) -> Document | None:
    # Return None for organization mismatch to keep 404 semantics.
    result = await session.execute(
        select(Document).where(Document.id == document_id, Document.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_documents_by_ids(session: AsyncSession, document_ids: list[str]) -> dict[str, Document]:
    if not document_ids:
        return {}
    result = await session.execute(select(Document).where(Document.id.in_(document_ids)))
    return {document.id: document for document in result.scalars().all()}
