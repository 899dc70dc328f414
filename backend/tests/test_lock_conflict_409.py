import pytest
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, OperationalError

from crm.core.db_errors import raise_on_duplicate, raise_on_lock_conflict


class DummyOrig(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.sqlstate = None
        self.args = (code, message)


@pytest.mark.anyio
async def test_lock_conflict_translates_to_http_409():
    exc = OperationalError("stmt", {}, DummyOrig(3572, "could not obtain lock"))
    with pytest.raises(HTTPException) as ctx:
        raise_on_lock_conflict(exc)
    assert ctx.value.status_code == 409
    assert "locked" in ctx.value.detail


@pytest.mark.anyio
async def test_non_lock_error_is_re_raised():
    exc = OperationalError("stmt", {}, DummyOrig(9999, "some other error"))
    with pytest.raises(OperationalError):
        raise_on_lock_conflict(exc)


def test_unique_violation_translates_to_http_400():
    exc = IntegrityError("stmt", {}, DummyOrig(1062, "Duplicate entry 'a@b.c' for key 'email'"))
    with pytest.raises(HTTPException) as ctx:
        raise_on_duplicate(exc, "Customer with this email already exists")
    assert ctx.value.status_code == 400
    assert ctx.value.detail == "Customer with this email already exists"


def test_other_integrity_error_is_re_raised():
    exc = IntegrityError("stmt", {}, DummyOrig(1452, "foreign key constraint fails"))
    with pytest.raises(IntegrityError):
        raise_on_duplicate(exc, "dup")
