"""Concurrent refresh of the same token must rotate it exactly once."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

from genesis_auth.service.results import ErrorKind, Ok
from genesis_auth.service.tokens import hash_token


async def _registered_refresh_token(auth_service):
    result = await auth_service.register("Race", "race@example.com", "CorrectHorse9!")
    return result.value.tokens.refresh_token


def _race_threads(auth_service, refresh_token, workers=10):
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(
            pool.map(lambda _: asyncio.run(auth_service.refresh(refresh_token)), range(workers))
        )
    winners = [result for result in results if isinstance(result, Ok)]
    losers = [result for result in results if not isinstance(result, Ok)]
    return winners, losers


def test_parallel_rotation_has_single_winner(auth_service, memory_store):
    refresh_token = asyncio.run(_registered_refresh_token(auth_service))

    winners, losers = _race_threads(auth_service, refresh_token)

    assert len(winners) == 1
    assert {result.kind for result in losers} == {ErrorKind.INVALID_REFRESH_TOKEN}

    old_record = memory_store.find_refresh_token(hash_token(refresh_token))
    new_record = memory_store.find_refresh_token(
        hash_token(winners[0].value.tokens.refresh_token)
    )
    assert old_record.replaced_by == new_record.id
    assert len(memory_store.list_refresh_tokens(old_record.user_id)) == 1


def test_successor_token_rotates_exactly_once_more(auth_service, memory_store):
    refresh_token = asyncio.run(_registered_refresh_token(auth_service))
    first_winners, _ = _race_threads(auth_service, refresh_token)
    successor = first_winners[0].value.tokens.refresh_token

    second_winners, second_losers = _race_threads(auth_service, successor)

    assert len(second_winners) == 1
    assert {result.kind for result in second_losers} == {ErrorKind.INVALID_REFRESH_TOKEN}

    third = second_winners[0].value.tokens.refresh_token
    successor_record = memory_store.find_refresh_token(hash_token(successor))
    third_record = memory_store.find_refresh_token(hash_token(third))
    assert successor_record.is_revoked is True
    assert successor_record.replaced_by == third_record.id
    assert [r.id for r in memory_store.list_refresh_tokens(third_record.user_id)] == [
        third_record.id
    ]

    # both spent tokens stay dead after the second rotation
    assert asyncio.run(auth_service.refresh(refresh_token)).kind == ErrorKind.INVALID_REFRESH_TOKEN
    assert asyncio.run(auth_service.refresh(successor)).kind == ErrorKind.INVALID_REFRESH_TOKEN


async def _gather_refresh(auth_service, token, count=5):
    return await asyncio.gather(*(auth_service.refresh(token) for _ in range(count)))


def test_gathered_rotation_has_single_winner(auth_service):
    refresh_token = asyncio.run(_registered_refresh_token(auth_service))

    results = asyncio.run(_gather_refresh(auth_service, refresh_token))
    assert sum(isinstance(result, Ok) for result in results) == 1

    successor = next(r for r in results if isinstance(r, Ok)).value.tokens.refresh_token
    second = asyncio.run(_gather_refresh(auth_service, successor))
    assert sum(isinstance(result, Ok) for result in second) == 1
