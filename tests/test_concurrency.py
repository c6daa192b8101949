import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from errors import CirculationError, PolicyDeniedError
from schemas import BookStatus, MemberPrivileges, Transaction

WORKERS = 8


def run_together(fn, args_list):
    barrier = threading.Barrier(len(args_list))

    def call(args):
        barrier.wait()
        try:
            return fn(*args)
        except CirculationError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
        return list(pool.map(call, args_list))


def test_single_copy_goes_to_exactly_one_member(service, store, make_book, make_member, now, check_invariants):
    book = make_book()
    members = [make_member() for _ in range(WORKERS)]

    results = run_together(lambda m: service.checkout(book.id, m.id, now=now), [(m,) for m in members])

    wins = [r for r in results if isinstance(r, Transaction)]
    losses = [r for r in results if isinstance(r, PolicyDeniedError)]
    assert len(wins) == 1
    assert len(losses) == WORKERS - 1
    assert all(r.reason == "not_available" for r in losses)
    assert store.count_documents(Transaction) == 1
    assert service.get_book(book.id).status == BookStatus.CHECKED_OUT
    check_invariants()


def test_member_limit_holds_under_parallel_checkouts(service, make_book, make_member, now, check_invariants):
    member = make_member(privileges=MemberPrivileges(max_books_allowed=2))
    books = [make_book() for _ in range(WORKERS)]

    results = run_together(lambda b: service.checkout(b.id, member.id, now=now), [(b,) for b in books])

    assert sum(isinstance(r, Transaction) for r in results) == 2
    assert service.get_member(member.id).books_currently_borrowed == 2
    check_invariants()


def test_digital_limit_holds_under_parallel_checkouts(service, make_book, make_member, now, check_invariants):
    book = make_book(is_digital=True)
    member = make_member(privileges=MemberPrivileges(max_digital_books_allowed=1))

    results = run_together(
        lambda _: service.checkout(book.id, member.id, is_digital=True, now=now), [(i,) for i in range(4)]
    )

    assert sum(isinstance(r, Transaction) for r in results) == 1
    assert service.get_member(member.id).digital_books_currently_borrowed == 1
    check_invariants()


def test_parallel_reservations_keep_positions_gap_free(service, make_book, make_member, now, check_invariants):
    book = make_book()
    service.checkout(book.id, make_member().id, now=now)
    members = [make_member() for _ in range(WORKERS)]

    results = run_together(
        lambda m, i: service.reserve(book.id, m.id, now=now + timedelta(seconds=i)),
        [(m, i) for i, m in enumerate(members)],
    )

    assert sorted(r.queue_position for r in results) == list(range(1, WORKERS + 1))
    check_invariants()


def test_return_racing_checkout_resolves_cleanly(service, make_book, make_member, now, check_invariants):
    book = make_book()
    holder, other = make_member(), make_member()
    service.checkout(book.id, holder.id, now=now)

    results = run_together(
        lambda op: op(),
        [
            (lambda: service.return_book(book.id, holder.id, now=now + timedelta(days=1)),),
            (lambda: service.checkout(book.id, other.id, now=now + timedelta(days=1)),),
        ],
    )

    returned = results[0]
    assert isinstance(returned, Transaction)
    checkout = results[1]
    assert isinstance(checkout, (Transaction, PolicyDeniedError))
    expected = BookStatus.CHECKED_OUT if isinstance(checkout, Transaction) else BookStatus.AVAILABLE
    assert service.get_book(book.id).status == expected
    check_invariants()
