"""
Catalog API endpoints: tour, activity and rental packages
"""

import logging
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.db.session import get_session
from packtrip.db.models import PackageType
from packtrip.db import crud
from packtrip.api.schemas import PACKAGE_READ_SCHEMAS
from packtrip.core.errors import NotFoundError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/packages", tags=["catalog"])

@router.get("/{package_type}",
    responses={
        200: {"description": "Packages retrieved successfully"},
        500: {"description": "Database error"}
    },
    summary="List packages",
    description="List bookable packages of one type (tour, activity or rental)"
)
async def list_packages(
    package_type: PackageType,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    include_unavailable: bool = False,
    session: AsyncSession = Depends(get_session)
):
    """List packages of a type"""
    schema = PACKAGE_READ_SCHEMAS[package_type]
    try:
        packages = await crud.get_packages(
            session, package_type, skip=skip, limit=limit, only_available=not include_unavailable
        )
    except SQLAlchemyError as e:
        logger.error(f"Error retrieving {package_type.value} packages: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve packages"
        )

    logger.info(f"Listed {len(packages)} {package_type.value} packages")
    return [schema.model_validate(p) for p in packages]

@router.get("/{package_type}/{package_id}",
    responses={
        200: {"description": "Package found"},
        404: {"description": "Package not found"}
    },
    summary="Get a package"
)
async def read_package(
    package_type: PackageType,
    package_id: UUID,
    session: AsyncSession = Depends(get_session)
):
    package = await crud.get_package(session, package_type, package_id)
    if package is None:
        raise NotFoundError(f"{package_type.value.capitalize()} package not found")
    return PACKAGE_READ_SCHEMAS[package_type].model_validate(package)
