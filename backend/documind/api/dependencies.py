"""
Composed FastAPI Dependencies

Route handlers take their collaborators from here. Everything hangs off
app.state, populated once by the application lifespan.
"""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import Depends, Request

from documind.core.exceptions import NotFoundError
from documind.models.documents import Document
from documind.services.container import Services
from documind.workers.queue import JobQueue


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_job_queue(request: Request) -> JobQueue:
    return request.app.state.job_queue


AppServices = Annotated[Services, Depends(get_services)]
AppQueue    = Annotated[JobQueue, Depends(get_job_queue)]


async def load_org_document(
    org_id: uuid.UUID,
    document_id: uuid.UUID,
    services: AppServices,
) -> Document:
    """404 unless the document exists, is live, and belongs to the org in the path."""
    async with services.database.unit_of_work() as uow:
        doc = await uow.documents.get(document_id)
    if doc is None or doc.org_id != org_id:
        raise NotFoundError("Document not found")
    return doc


OrgDocument = Annotated[Document, Depends(load_org_document)]
