from datetime import date

from conftest import USER_ID
from models import ClearedStatus, Transaction
from schemas import ImportedTransactionIn
from services import ImportService


def _record(import_id, amount_cents, **extra):
    return ImportedTransactionIn(
        import_id=import_id, date=date(2024, 4, 10), amount_cents=amount_cents, **extra
    )


def test_import_dedupes_and_leaves_rows_unapproved(session, ledger) -> None:
    importer = ImportService(session, USER_ID)
    first = importer.import_transactions(
        ledger.checking.id,
        [
            _record("bank-1", -1_250, payee_name="Bakery", category_name="grocerie"),
            _record("bank-2", -800, pending=False),
        ],
    )
    assert len(first.created) == 2
    assert first.skipped == []

    again = importer.import_transactions(
        ledger.checking.id,
        [_record("bank-1", -1_250), _record("bank-3", -99)],
    )
    assert again.skipped == ["bank-1"]
    assert len(again.created) == 1

    rows = {
        t.import_id: t
        for t in session.query(Transaction).filter(Transaction.import_id.is_not(None))
    }
    assert set(rows) == {"bank-1", "bank-2", "bank-3"}
    assert all(row.approved is False for row in rows.values())
    assert rows["bank-1"].cleared == ClearedStatus.uncleared
    assert rows["bank-2"].cleared == ClearedStatus.cleared
    assert rows["bank-1"].category_id == ledger.groceries.id
    assert rows["bank-1"].payee.name == "Bakery"


def test_same_batch_duplicates_are_skipped(session, ledger) -> None:
    result = ImportService(session, USER_ID).import_transactions(
        ledger.checking.id, [_record("dup", -100), _record("dup", -100)]
    )
    assert len(result.created) == 1
    assert result.skipped == ["dup"]


def test_category_hints(session, ledger) -> None:
    categories = [ledger.groceries, ledger.rent, ledger.fun]
    match = ImportService.match_category

    assert match("Groceries", categories) == ledger.groceries.id
    assert match("  RENT ", categories) == ledger.rent.id
    assert match("grocerie", categories) == ledger.groceries.id
    assert match("Gro", categories) is None
    assert match("", categories) is None
    assert match(None, categories) is None


def test_payment_categories_are_never_matched(session, ledger) -> None:
    [txn_id] = ImportService(session, USER_ID).import_transactions(
        ledger.checking.id, [_record("p-1", -100, category_name="Visa Payments")]
    ).created
    assert session.get(Transaction, txn_id).category_id is None


def test_remove_imported_deletes_only_listed_ids(session, ledger) -> None:
    importer = ImportService(session, USER_ID)
    importer.import_transactions(
        ledger.checking.id, [_record("a", -100), _record("b", -200)]
    )

    removed = importer.remove_imported(ledger.checking.id, ["a", "missing"])
    assert len(removed) == 1
    remaining = session.query(Transaction.import_id).filter(
        Transaction.import_id.is_not(None)
    )
    assert [row.import_id for row in remaining] == ["b"]
    assert importer.remove_imported(ledger.checking.id, []) == []


def test_import_csv_reports_bad_rows(session, ledger) -> None:
    content = (
        "Date,Payee,Amount,Memo,Category,Id\n"
        "2024-04-03,Bakery,-12.50,Bread,Groceries,\n"
        "04/05/2024,Employer,\"1.500,00\",,,pay-1\n"
        "not a date,Nobody,1.00,,,\n"
        "2024-04-06,Cafe,abc,,,\n"
    )
    importer = ImportService(session, USER_ID)

    result = importer.import_csv(ledger.checking.id, content)
    assert len(result.created) == 2
    assert len(result.errors) == 2
    assert result.errors[0].startswith("Row 3:")

    rows = sorted(
        session.query(Transaction).filter(Transaction.import_id.is_not(None)),
        key=lambda t: t.date,
    )
    assert [r.amount_cents for r in rows] == [-1_250, 150_000]
    assert rows[0].category_id == ledger.groceries.id
    assert rows[0].import_id.startswith("csv:")
    assert rows[1].import_id == "pay-1"
    assert all(r.cleared == ClearedStatus.cleared for r in rows)

    again = importer.import_csv(ledger.checking.id, content)
    assert again.created == []
    assert len(again.skipped) == 2
