"""Tests for the leaf storage layer."""

import pytest
from sqlalchemy import select

from spendnote.core.notes import MAX_AMOUNT, MerkleLeaf, SpendNote
from spendnote.exceptions import InvalidInputError, StorageError, StorageUnavailableError
from spendnote.storage.database import (
    InMemoryLeafStore,
    MerkleRootRecord,
    SpendNoteRecord,
    SQLLeafStore,
)
from spendnote.utils.encoding import bytes_to_hex
from spendnote.utils.hash import sha256


def make_leaf(i: int, amount: int = 1000) -> MerkleLeaf:
    note = SpendNote(
        wallet_address="0x" + f"{i + 1:040x}",
        nullifier=bytes_to_hex(sha256(f"n{i}")),
        amount=amount,
        timestamp=1_700_000_000_000 + i,
    )
    return MerkleLeaf.from_note(note)


@pytest.fixture
def sql_store(temp_db):
    store = SQLLeafStore(temp_db)
    yield store
    store.close()


class TestSpendNote:
    """Tests for the canonical leaf encoding."""

    def test_encoding_layout(self):
        note = SpendNote(
            wallet_address="0x" + "01" * 20,
            nullifier="0x" + "02" * 32,
            amount=258,
            timestamp=1,
        )
        encoded = note.encode()
        assert len(encoded) == 20 + 32 + 32 + 8
        assert encoded[:20] == b"\x01" * 20
        assert encoded[20:52] == b"\x02" * 32
        assert encoded[52:84] == (258).to_bytes(32, "big")
        assert encoded[84:] == (1).to_bytes(8, "big")
        assert note.leaf_hash() == sha256(encoded)

    def test_amount_bounds(self):
        make_leaf(0, amount=MAX_AMOUNT)
        with pytest.raises(InvalidInputError):
            make_leaf(0, amount=MAX_AMOUNT + 1)
        with pytest.raises(InvalidInputError):
            make_leaf(0, amount=-1)

    def test_invalid_fields(self):
        with pytest.raises(InvalidInputError):
            SpendNote(wallet_address="0x12", nullifier="0x" + "00" * 32, amount=1, timestamp=1)
        with pytest.raises(InvalidInputError):
            SpendNote(wallet_address="0x" + "00" * 20, nullifier="0x00", amount=1, timestamp=1)
        with pytest.raises(InvalidInputError):
            SpendNote(wallet_address="0x" + "00" * 20, nullifier="0x" + "00" * 32,
                      amount=True, timestamp=1)

    def test_leaf_consistency(self):
        leaf = make_leaf(3)
        assert leaf.is_consistent()
        assert not MerkleLeaf(hash="0x" + "00" * 32, spend_note=leaf.spend_note).is_consistent()


class TestInMemoryLeafStore:
    """Tests for the in-memory store."""

    def test_append_and_load_in_index_order(self):
        store = InMemoryLeafStore()
        leaves = [make_leaf(i) for i in range(3)]
        store.append_leaf(leaves[2], 2)
        store.append_leaf(leaves[0], 0)
        store.append_leaf(leaves[1], 1)
        assert store.load_all_leaves() == leaves

    def test_duplicate_index(self):
        store = InMemoryLeafStore()
        store.append_leaf(make_leaf(0), 0)
        with pytest.raises(StorageError):
            store.append_leaf(make_leaf(1), 0)

    def test_unavailable(self):
        store = InMemoryLeafStore()
        store.available = False
        with pytest.raises(StorageUnavailableError):
            store.load_all_leaves()


class TestSQLLeafStore:
    """Tests for the SQLAlchemy store."""

    def test_tables_created(self, sql_store):
        assert sql_store.load_all_leaves() == []
        assert sql_store.latest_root() is None

    def test_leaf_with_root_roundtrip(self, sql_store):
        leaf = make_leaf(0, amount=10**30)
        sql_store.append_leaf_with_root(leaf, 0, "0x" + "ab" * 32, 123)

        loaded = sql_store.load_all_leaves()
        assert loaded == [leaf]
        assert loaded[0].spend_note.amount == 10**30
        assert sql_store.latest_root() == "0x" + "ab" * 32

    def test_rows_written_together(self, sql_store):
        sql_store.append_leaf_with_root(make_leaf(0), 0, "0x" + "01" * 32, 1)
        sql_store.append_leaf_with_root(make_leaf(1), 1, "0x" + "02" * 32, 2)
        with sql_store.SessionLocal() as session:
            roots = session.execute(select(MerkleRootRecord)).scalars().all()
            notes = session.execute(select(SpendNoteRecord)).scalars().all()
        assert [r.num_leaves for r in roots] == [1, 2]
        assert [n.leaf_index for n in notes] == [0, 1]

    def test_duplicate_leaf_rolls_back(self, sql_store):
        sql_store.append_leaf_with_root(make_leaf(0), 0, "0x" + "01" * 32, 1)
        with pytest.raises(StorageError):
            sql_store.append_leaf_with_root(make_leaf(0), 1, "0x" + "02" * 32, 2)
        # Neither the leaf nor its root was written
        assert len(sql_store.load_all_leaves()) == 1
        assert sql_store.latest_root() == "0x" + "01" * 32

    def test_unreachable_database(self, tmp_path):
        with pytest.raises(StorageUnavailableError):
            SQLLeafStore(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}")

    def test_persists_across_instances(self, temp_db):
        first = SQLLeafStore(temp_db)
        first.append_leaf(make_leaf(0), 0)
        first.append_root("0x" + "cd" * 32, 5, 1)
        first.close()

        second = SQLLeafStore(temp_db)
        assert second.load_all_leaves() == [make_leaf(0)]
        assert second.latest_root() == "0x" + "cd" * 32
        second.close()
