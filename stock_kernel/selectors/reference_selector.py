"""
Module: stock_kernel.selectors.reference_selector
Responsibility: Read-only lookups of reference data owned by external
    collaborators: pharmacies (for access scoping) and the drug catalog
    (for ``receive``).
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import select

from stock_kernel.domain.dtos import DrugReference, PharmacyInfo
from stock_kernel.models.drug import DrugModel
from stock_kernel.models.pharmacy import PharmacyModel
from stock_kernel.selectors.base import BaseSelector


class ReferenceDataSelector(BaseSelector[PharmacyModel]):
    """Pharmacy and drug reference lookups."""

    def get_pharmacy(self, pharmacy_id: UUID) -> PharmacyInfo | None:
        model = self.session.get(PharmacyModel, pharmacy_id)
        return PharmacyInfo.from_model(model) if model is not None else None

    def get_drug(self, drug_id: int) -> DrugReference | None:
        model = self.session.execute(
            select(DrugModel).where(DrugModel.drug_id == drug_id)
        ).scalar_one_or_none()
        return DrugReference.from_model(model) if model is not None else None
