import pytest

from careconnect.exceptions import DuplicateRecordError, NotFoundError
from careconnect.models import Child, FundingStatus, FundingSubmission, SubmissionStatus
from careconnect.store import InMemoryRecordStore


def test_records_are_copied_in_and_out() -> None:
    store = InMemoryRecordStore()
    child = Child(id="child-1", name="Emma", school_id="school-1")
    store.create(child)

    child.mark_funded()
    loaded = store.get(Child, "child-1")
    loaded.name = "Changed"

    assert store.get(Child, "child-1").funding_status is FundingStatus.NOT_FUNDED
    assert store.get(Child, "child-1").name == "Emma"


def test_create_get_update_and_filter() -> None:
    store = InMemoryRecordStore()
    store.create(FundingSubmission(id="fs-1", sponsor_id="sponsor-1", period=1))
    store.create(FundingSubmission(id="fs-2", sponsor_id="sponsor-2", period=2))

    with pytest.raises(DuplicateRecordError):
        store.create(FundingSubmission(id="fs-1", sponsor_id="sponsor-1", period=1))
    with pytest.raises(NotFoundError):
        store.get(FundingSubmission, "fs-404")
    with pytest.raises(NotFoundError):
        store.update(FundingSubmission(id="fs-404", sponsor_id="sponsor-1", period=1))

    record = store.get(FundingSubmission, "fs-2")
    record.reject("stuart-1", "Not this cycle")
    store.update(record)

    assert [item.id for item in store.filter(FundingSubmission, sponsor_id="sponsor-1")] == ["fs-1"]
    assert [item.id for item in store.filter(FundingSubmission, status=SubmissionStatus.REJECTED)] == ["fs-2"]
    assert [item.id for item in store.filter(FundingSubmission, status="rejected")] == ["fs-2"]


def test_atomic_block_rolls_back_every_write_on_error() -> None:
    store = InMemoryRecordStore()
    store.create(Child(id="child-1", name="Emma", school_id="school-1"))

    with pytest.raises(RuntimeError):
        with store.atomic():
            child = store.get(Child, "child-1")
            child.mark_funded()
            store.update(child)
            store.create(FundingSubmission(id="fs-1", sponsor_id="sponsor-1", period=1))
            raise RuntimeError("storage write failed")

    assert store.get(Child, "child-1").funding_status is FundingStatus.NOT_FUNDED
    assert store.filter(FundingSubmission) == []


def test_nested_atomic_blocks_commit_with_outer_block() -> None:
    store = InMemoryRecordStore()

    with store.atomic():
        store.create(Child(id="child-1", name="Emma", school_id="school-1"))
        with store.atomic():
            store.create(Child(id="child-2", name="Noah", school_id="school-1"))

    assert {child.id for child in store.filter(Child)} == {"child-1", "child-2"}


def test_rollback_restores_each_record_to_its_state_before_the_block() -> None:
    store = InMemoryRecordStore()
    store.create(Child(id="child-1", name="Emma", school_id="school-1"))
    store.create(Child(id="child-2", name="Noah", school_id="school-1"))

    with pytest.raises(RuntimeError):
        with store.atomic():
            child = store.get(Child, "child-1")
            child.name = "Emma J."
            store.update(child)
            child.mark_funded()
            store.update(child)
            store.create(Child(id="child-3", name="Liam", school_id="school-2"))
            raise RuntimeError("storage write failed")

    restored = store.get(Child, "child-1")
    assert (restored.name, restored.funding_status) == ("Emma", FundingStatus.NOT_FUNDED)
    assert store.get(Child, "child-2").name == "Noah"
    assert sorted(child.id for child in store.filter(Child)) == ["child-1", "child-2"]

    with store.atomic():
        store.create(Child(id="child-3", name="Liam", school_id="school-2"))
    assert store.get(Child, "child-3").school_id == "school-2"
