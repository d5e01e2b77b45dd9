from __future__ import annotations

from typing import Callable, Iterator, Optional

from errors import ConflictError, NotFoundError, ValidationError
from models import Bed, BedStatus, Ward, utcnow
from repository import UnitOfWork

DEFAULT_PAGE_SIZE = 50


class AvailableBeds:
    """Lazy view over the Free beds of a ward, ascending by bed id.

    Beds are read a page at a time; every new iteration starts again from the
    lowest id, so the view can be walked repeatedly and reflects the latest
    committed state each time.
    """

    def __init__(self, fetch_page: Callable[[Optional[int], int], list[Bed]], page_size: int = DEFAULT_PAGE_SIZE):
        self._fetch_page = fetch_page
        self._page_size = page_size

    def __iter__(self) -> Iterator[Bed]:
        after_id = None
        while True:
            page = self._fetch_page(after_id, self._page_size)
            yield from page
            if len(page) < self._page_size:
                return
            after_id = page[-1].id


class BedRegistry:
    """Ward and bed inventory. Only the ATD engine calls the mutating methods."""

    def register_ward(self, uow: UnitOfWork, name: str, bed_count: int, label_prefix: str = "B") -> Ward:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Ward name cannot be empty")
        if not isinstance(bed_count, int) or isinstance(bed_count, bool) or bed_count <= 0:
            raise ValidationError("Bed count must be a positive integer")
        if uow.query(Ward, name=name):
            raise ConflictError(f"Ward '{name}' already exists")

        ward = uow.put(Ward(name=name, capacity=bed_count))
        for number in range(1, bed_count + 1):
            uow.put(Bed(ward_id=ward.id, label=f"{label_prefix}{number}"))
        return ward

    def get_ward(self, uow: UnitOfWork, ward_id: int) -> Ward:
        ward = uow.get(Ward, ward_id)
        if not ward:
            raise NotFoundError(f"Ward #{ward_id} not found")
        return ward

    def get_bed(self, uow: UnitOfWork, bed_id: int) -> Bed:
        bed = uow.get(Bed, bed_id)
        if not bed:
            raise NotFoundError(f"Bed #{bed_id} not found")
        return bed

    def occupy(self, uow: UnitOfWork, bed_id: int, admission_id: int) -> Bed:
        bed = self.get_bed(uow, bed_id)
        if bed.status == BedStatus.OCCUPIED:
            raise ConflictError(f"Bed {bed.label} (#{bed.id}) is already occupied")
        bed.status = BedStatus.OCCUPIED
        bed.occupant_admission_id = admission_id
        bed.updated_at = utcnow()
        return uow.put(bed)

    def release(self, uow: UnitOfWork, bed_id: int) -> Bed:
        bed = self.get_bed(uow, bed_id)
        if bed.status == BedStatus.FREE:
            raise ConflictError(f"Bed {bed.label} (#{bed.id}) is already free")
        bed.status = BedStatus.FREE
        bed.occupant_admission_id = None
        bed.updated_at = utcnow()
        return uow.put(bed)

    def free_beds_page(self, uow: UnitOfWork, ward_id: int, after_id: Optional[int], limit: int) -> list[Bed]:
        return uow.query(Bed, ward_id=ward_id, status=BedStatus.FREE, after_id=after_id, limit=limit)

    def list_beds(self, uow: UnitOfWork, ward_id: int) -> list[Bed]:
        self.get_ward(uow, ward_id)
        return uow.query(Bed, ward_id=ward_id)

    def list_wards(self, uow: UnitOfWork) -> list[Ward]:
        return uow.query(Ward)

    def ward_census(self, uow: UnitOfWork, ward_id: int) -> dict:
        ward = self.get_ward(uow, ward_id)
        beds = uow.query(Bed, ward_id=ward_id)
        occupied = sum(1 for bed in beds if bed.status == BedStatus.OCCUPIED)
        return {
            "ward_id": ward.id,
            "ward_name": ward.name,
            "capacity": len(beds),
            "occupied": occupied,
            "free": len(beds) - occupied,
        }
