from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from crm.core.optimistic_lock import ensure_expected_timestamp
from crm.schemas.campaign import CampaignUpdate
from crm.schemas.customer import CustomerUpdate


@pytest.mark.anyio
async def test_customer_stale_timestamp_raises_conflict():
    current = datetime.utcnow().replace(microsecond=0)
    payload = CustomerUpdate(name="Updated", expected_updated_at=current - timedelta(seconds=5))

    with pytest.raises(HTTPException) as ctx:
        ensure_expected_timestamp(current, payload.expected_updated_at)
    assert ctx.value.status_code == 409


@pytest.mark.anyio
async def test_matching_timestamp_ignores_microseconds_and_timezone():
    current = datetime(2024, 5, 1, 10, 30, 15, 123456)
    payload = CampaignUpdate.model_validate({"name": "Spring", "expectedUpdatedAt": "2024-05-01T10:30:15Z"})

    ensure_expected_timestamp(current, payload.expected_updated_at)


@pytest.mark.anyio
async def test_missing_expected_timestamp_skips_check():
    ensure_expected_timestamp(datetime.utcnow(), None)
