from typing import List

from fastapi import APIRouter, Query

from trekbook.api.v1.schemas.booking_schemas import TourOut
from trekbook.core import NotFoundError
from trekbook.deps import SessionDep
from trekbook.domain import ADDONS
from trekbook.infrastructure.repositories import TourRepository


router = APIRouter()


def _tour_out(tour) -> TourOut:
    return TourOut(
        id=tour.id,
        slug=tour.slug,
        name=tour.name,
        price_per_traveler=tour.price_per_traveler,
        duration_days=tour.duration_days,
        addons=ADDONS,
    )


@router.get("", response_model=List[TourOut])
async def list_tours(
    sess: SessionDep,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    tours = await TourRepository(sess).list_active(skip=skip, limit=limit)
    return [_tour_out(tour) for tour in tours]


@router.get("/{tour_id}", response_model=TourOut)
async def get_tour(tour_id: int, sess: SessionDep):
    """Tour snapshot and add-on catalog for checkout"""
    tour = await TourRepository(sess).get_active(tour_id)
    if not tour:
        raise NotFoundError("Tour", tour_id)
    return _tour_out(tour)
