from datetime import datetime

import pytest

from ga_otp import (
    Credential, EmptyKeyRing, KeyRing, MigrationEnvelope, bulk_filename,
    decode_migration_uri, encode_migration_uri, export_filename, plan_batches,
)


def ring_of(n):
    return KeyRing(Credential(account_id=f"user{i:02d}", secret=bytes([i + 1]) * 10) for i in range(n))


@pytest.mark.parametrize("total, expected", [(1, 1), (9, 1), (10, 1), (11, 2), (25, 3), (30, 3)])
def test_batch_count(total, expected):
    envelopes = plan_batches(ring_of(total))
    assert len(envelopes) == expected
    assert all(e.batch_count == expected for e in envelopes)


def test_partition_keeps_sorted_order_without_gaps():
    ring = ring_of(25)
    envelopes = plan_batches(ring)
    assert [e.batch_index for e in envelopes] == [0, 1, 2]
    assert [len(e.entries) for e in envelopes] == [10, 10, 5]
    assert all(e.schema_version == 1 for e in envelopes)
    flattened = [c.display_key for e in envelopes for c in e.entries]
    assert flattened == ring.keys()


def test_custom_batch_size():
    envelopes = plan_batches(ring_of(5), batch_size=2)
    assert [len(e.entries) for e in envelopes] == [2, 2, 1]
    with pytest.raises(ValueError):
        plan_batches(ring_of(5), batch_size=0)


def test_empty_ring_is_an_error():
    with pytest.raises(EmptyKeyRing):
        plan_batches(KeyRing())


def test_batches_survive_the_wire():
    for envelope in plan_batches(ring_of(12)):
        assert decode_migration_uri(encode_migration_uri(envelope)) == envelope


def test_filenames_are_one_based():
    envelope = MigrationEnvelope(batch_count=3, batch_index=0)
    assert export_filename(envelope, datetime(2024, 3, 5)) == "export_keys_20240305_01_of_03.jpg"
    assert bulk_filename(MigrationEnvelope(batch_count=3, batch_index=2)) == "bulk_keys_03.jpg"
