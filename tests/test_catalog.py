import pytest

from pharmacy_ledger.core.errors import ConflictError, NotFoundError, ValidationError
from pharmacy_ledger.schemas.pharmacy_inventory import MedicineCreate, MedicineQuery, MedicineUpdate
from pharmacy_ledger.services.catalog import (
    create_medicine,
    delete_medicine,
    get_medicine,
    list_medicines,
    update_medicine,
)


class TestCreateMedicine:
    def test_creates_active_medicine(self, db):
        med = create_medicine(
            db,
            MedicineCreate(name="Amoxicillin", generic_name="Amoxicillin", dosage_form="CAPSULE", strength="250mg"),
        )
        assert med.id is not None
        assert med.is_active is True
        assert med.prescription_required is False

    def test_duplicate_identity_is_a_conflict(self, db, make_medicine):
        make_medicine("Cetirizine", dosage_form="TABLET", strength="10mg")
        with pytest.raises(ConflictError):
            create_medicine(db, MedicineCreate(name="Cetirizine", dosage_form="TABLET", strength="10mg"))

    def test_same_name_other_strength_is_allowed(self, db, make_medicine):
        make_medicine("Cetirizine", strength="10mg")
        other = create_medicine(db, MedicineCreate(name="Cetirizine", dosage_form="TABLET", strength="5mg"))
        assert other.strength == "5mg"


class TestUpdateMedicine:
    def test_descriptive_fields_change_freely(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 10)
        updated = update_medicine(db, med.id, MedicineUpdate(manufacturer="Sun Pharma", is_active=False))
        assert updated.manufacturer == "Sun Pharma"
        assert updated.is_active is False

    def test_identity_is_frozen_once_batches_exist(self, db, make_medicine, receive):
        med = make_medicine(strength="500mg")
        receive(med, 10)
        with pytest.raises(ConflictError) as exc:
            update_medicine(db, med.id, MedicineUpdate(strength="650mg"))
        assert exc.value.details["fields"] == ["strength"]

    def test_identity_can_change_before_any_batch(self, db, make_medicine):
        med = make_medicine(strength="500mg")
        updated = update_medicine(db, med.id, MedicineUpdate(strength="650mg"))
        assert updated.strength == "650mg"

    def test_blank_identity_rejected(self, db, make_medicine):
        med = make_medicine()
        with pytest.raises(ValidationError):
            update_medicine(db, med.id, MedicineUpdate(name="   "))


class TestDeleteAndQuery:
    def test_delete_without_batches(self, db, make_medicine):
        med = make_medicine()
        delete_medicine(db, med.id)
        with pytest.raises(NotFoundError):
            get_medicine(db, med.id)

    def test_delete_with_batches_is_refused(self, db, make_medicine, receive):
        med = make_medicine()
        receive(med, 5)
        with pytest.raises(ConflictError):
            delete_medicine(db, med.id)

    def test_list_filters_by_name_and_active(self, db, make_medicine):
        make_medicine("Ibuprofen")
        make_medicine("Ibuprofen Forte", strength="400mg")
        inactive = make_medicine("Insulin Glargine", dosage_form="INJECTION", strength="100IU/ml")
        update_medicine(db, inactive.id, MedicineUpdate(is_active=False))

        rows, total = list_medicines(db, MedicineQuery(name="ibu"))
        assert total == 2
        assert [m.name for m in rows] == ["Ibuprofen", "Ibuprofen Forte"]

        rows, total = list_medicines(db, MedicineQuery(is_active=False))
        assert total == 1
        assert rows[0].id == inactive.id
