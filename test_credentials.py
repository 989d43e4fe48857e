#!/usr/bin/env python3
"""
用户凭据存储测试
"""

import pytest

from credentials import check_credentials, load_users
from errors import CredentialStoreError


def test_missing_file_is_created_empty(tmp_path):
    users_file = tmp_path / 'etc' / 'users.txt'
    assert load_users(str(users_file)) == {}
    assert users_file.exists()
    assert users_file.read_text() == ''


def test_line_syntax(tmp_path):
    users_file = tmp_path / 'users.txt'
    users_file.write_bytes(
        b'alice:secret\n'
        b'no colon here\n'
        b'bob:pa:ss:word\r\n'
        b' carol : spaced \n'
        b'alice:newer\n'
        b'empty:\n'
        b':nouser'
    )
    users = load_users(str(users_file))
    assert users == {
        'alice': 'newer',
        'bob': 'pa:ss:word',
        ' carol ': ' spaced ',
        'empty': '',
        '': 'nouser',
    }


def test_unreadable_path_raises(tmp_path):
    # 目录无法按文件打开
    with pytest.raises(CredentialStoreError):
        load_users(str(tmp_path))


def test_invalid_utf8_raises(tmp_path):
    users_file = tmp_path / 'users.txt'
    users_file.write_bytes(b'alice:\xff\xfe\n')
    with pytest.raises(CredentialStoreError):
        load_users(str(users_file))


def test_reload_sees_changes(tmp_path):
    users_file = tmp_path / 'users.txt'
    users_file.write_text('alice:one\n')
    assert load_users(str(users_file)) == {'alice': 'one'}
    users_file.write_text('alice:two\n')
    assert load_users(str(users_file)) == {'alice': 'two'}


def test_check_credentials():
    users = {'alice': 'secret', 'bob': 'hunter2'}
    assert check_credentials(users, 'alice', 'secret')
    assert not check_credentials(users, 'alice', 'hunter2')
    assert not check_credentials(users, 'alice', 'secret ')
    assert not check_credentials(users, 'mallory', 'secret')
    assert not check_credentials({}, 'alice', 'secret')
