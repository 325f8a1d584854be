# Tests for host-bound credential storage

import json

import pytest

from possync.credential_store import (
    CredentialStore,
    StoredCredentials,
    MAX_CREDENTIAL_SIZE_BYTES,
    validate_secret,
)
from possync.errors import CredentialError


def make_creds(**overrides) -> StoredCredentials:
    values = dict(
        agent_id='tis-agent-001',
        auth_secret='a' * 64,
        tenant_id='tenant-1',
        integration_id='integration-1',
        branch_id='branch-1',
        connection_string='DRIVER={x};SERVER=.;DATABASE=DVSOFT',
    )
    values.update(overrides)
    return StoredCredentials(**values)


class TestCredentialStore:
    """Test encrypted credential persistence"""

    def _store(self, tmp_path, machine_id='host-a') -> CredentialStore:
        return CredentialStore(str(tmp_path / 'creds.bin'), use_dpapi=False, machine_id=machine_id)

    def test_store_and_retrieve(self, tmp_path):
        """Test credentials survive a roundtrip on the same host"""
        store = self._store(tmp_path)
        store.store(make_creds())

        creds = self._store(tmp_path).retrieve()
        assert creds.agent_id == 'tis-agent-001'
        assert creds.auth_secret == 'a' * 64
        assert creds.branch_id == 'branch-1'
        assert creds.created_at is not None

    def test_file_is_not_plaintext(self, tmp_path):
        """Test the secret never reaches disk in the clear"""
        self._store(tmp_path).store(make_creds(auth_secret='very-secret-value'))

        raw = (tmp_path / 'creds.bin').read_bytes()
        assert b'very-secret-value' not in raw
        assert b'tis-agent-001' not in raw

    def test_other_host_cannot_decrypt(self, tmp_path):
        """Test a different host identity fails with CredentialError"""
        self._store(tmp_path, 'host-a').store(make_creds())

        with pytest.raises(CredentialError):
            self._store(tmp_path, 'host-b').retrieve()

    def test_retrieve_without_file(self, tmp_path):
        """Test nothing stored returns None"""
        store = self._store(tmp_path)

        assert store.retrieve() is None
        assert store.exists() is False

    def test_update_token(self, tmp_path):
        """Test rotation keeps the identity and replaces the secret"""
        store = self._store(tmp_path)
        store.store(make_creds())

        assert store.update_token('b' * 64) is True
        creds = store.retrieve()
        assert creds.auth_secret == 'b' * 64
        assert creds.tenant_id == 'tenant-1'
        assert creds.token_updated_at is not None

    def test_update_token_without_credentials(self, tmp_path):
        """Test rotation with nothing stored reports False"""
        assert self._store(tmp_path).update_token('b' * 64) is False

    def test_oversized_payload_rejected(self, tmp_path):
        """Test the size limit is enforced before writing"""
        store = self._store(tmp_path)
        huge = make_creds(connection_string='x' * (MAX_CREDENTIAL_SIZE_BYTES + 1))

        with pytest.raises(CredentialError):
            store.store(huge)
        assert not (tmp_path / 'creds.bin').exists()

    def test_delete(self, tmp_path):
        """Test delete removes the file"""
        store = self._store(tmp_path)
        store.store(make_creds())
        store.delete()

        assert store.retrieve() is None

    def test_unknown_fields_ignored(self):
        """Test newer credential files load on older agents"""
        data = json.loads(json.dumps({'agent_id': 'a', 'auth_secret': 's', 'future_field': 1}))

        creds = StoredCredentials.from_dict(data)
        assert creds.agent_id == 'a'


class TestValidateSecret:
    """Test secret format checks"""

    @pytest.mark.parametrize('secret', ['', None, 'abc\ndef', 'tab\there'])
    def test_invalid_secrets(self, secret):
        """Test empty and control-character secrets are rejected"""
        with pytest.raises(CredentialError):
            validate_secret(secret)

    def test_valid_secret(self):
        """Test a hex secret passes"""
        validate_secret('0123456789abcdef' * 4)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
