from sqlalchemy import select
from sqlalchemy.orm import Session

from models import BudgetEntry


def get_or_create_entry(
    session: Session,
    category_id: int,
    year: int,
    month: int,
    *,
    for_update: bool = False,
) -> BudgetEntry:
    """
    Return the entry for (category, year, month), creating a zero entry if
    none exists yet.

    With ``for_update`` the row is read with ``SELECT ... FOR UPDATE`` so that
    a check-then-write on ``assigned_cents`` stays valid until the caller's
    unit of work commits. Callers are responsible for checking the category
    belongs to the budget they are working in.
    """
    stmt = select(BudgetEntry).where(
        BudgetEntry.category_id == category_id,
        BudgetEntry.year == year,
        BudgetEntry.month == month,
    )
    if for_update:
        stmt = stmt.with_for_update()
    entry = session.scalars(stmt).first()
    if entry is None:
        entry = BudgetEntry(
            category_id=category_id, year=year, month=month, assigned_cents=0
        )
        session.add(entry)
        session.flush()
    return entry


def adjust_assigned(
    session: Session, category_id: int, year: int, month: int, delta_cents: int
) -> BudgetEntry:
    entry = get_or_create_entry(session, category_id, year, month, for_update=True)
    if delta_cents:
        entry.assigned_cents += delta_cents
        session.flush()
    return entry


def assigned_for_month(session: Session, year: int, month: int, category_ids) -> dict[int, int]:
    ids = list(category_ids)
    if not ids:
        return {}
    rows = session.execute(
        select(BudgetEntry.category_id, BudgetEntry.assigned_cents).where(
            BudgetEntry.year == year,
            BudgetEntry.month == month,
            BudgetEntry.category_id.in_(ids),
        )
    ).all()
    return {category_id: assigned for category_id, assigned in rows}
