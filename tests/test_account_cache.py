import json

from CFDeployments.account_cache import AccountAccessKeyCache

ACCOUNT_A = {'accountId': '111111111111', 'partition': 'aws'}
ACCOUNT_B = {'accountId': '222222222222', 'partition': 'aws-cn'}


class Resolver:
    def __init__(self, account):
        self.account = account
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.account


async def test_fetch_stores_resolved_account(tmp_path):
    cache = AccountAccessKeyCache(str(tmp_path / 'cache' / 'accounts.json'))
    resolver = Resolver(ACCOUNT_A)

    assert await cache.fetch('AKIA1', resolver) == ACCOUNT_A
    assert await cache.fetch('AKIA1', resolver) == ACCOUNT_A
    assert resolver.calls == 1
    assert json.loads((tmp_path / 'cache' / 'accounts.json').read_text()) == {'AKIA1': ACCOUNT_A}


async def test_empty_resolution_is_not_stored(tmp_path):
    cache = AccountAccessKeyCache(str(tmp_path / 'accounts.json'))

    assert await cache.fetch('AKIA1', Resolver(None)) is None
    assert cache.get('AKIA1') is None


def test_cache_is_reset_when_full(tmp_path):
    cache = AccountAccessKeyCache(str(tmp_path / 'accounts.json'), max_entries=2)
    cache.put('AKIA1', ACCOUNT_A)
    cache.put('AKIA2', ACCOUNT_B)

    cache.put('AKIA3', ACCOUNT_A)

    assert cache.get('AKIA1') is None
    assert cache.get('AKIA3') == ACCOUNT_A


async def test_corrupt_cache_is_a_miss(tmp_path):
    path = tmp_path / 'accounts.json'
    path.write_text('{"AKIA1": ')
    cache = AccountAccessKeyCache(str(path))
    resolver = Resolver(ACCOUNT_B)

    assert await cache.fetch('AKIA1', resolver) == ACCOUNT_B
    assert resolver.calls == 1
    assert cache.get('AKIA1') == ACCOUNT_B
