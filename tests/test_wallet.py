"""Tests for the wallet layer: signers, keystores, Safe helpers and the session cache."""

from types import SimpleNamespace

import pytest
from eth_account import Account
from web3 import Web3

from safer_wallet.config import OwnerConfig, SaferConfig
from safer_wallet.exceptions import (
    ConfigurationError,
    ParameterError,
    SafeNotConfiguredError,
    SignatureError,
)
from safer_wallet.storage.models import SafeTransaction
from safer_wallet.wallet.keystore import create_keystore, decrypt_key, load_address
from safer_wallet.wallet.provider import SafeSession
from safer_wallet.wallet.safe import (
    SAFE_ABI,
    Web3SafeSDK,
    adjust_eth_sign_v,
    execution_signatures,
    pre_validated_signature,
    recover_eth_sign_owner,
)
from safer_wallet.wallet.signers import (
    KEYSTORE_PASSWORD_ENV,
    LedgerSigner,
    PrivateKeySigner,
    Signer,
    create_signer,
)

from conftest import CHAIN_ID, KEY_A, KEY_B, SAFE_ADDRESS

SAFE_TX_HASH = "0x" + "5a" * 32


# =====================================================================
#   Signers
# =====================================================================


class TestSigners:
    def test_private_key_signer(self, signer_a):
        assert isinstance(signer_a, Signer)
        assert signer_a.address == Account.from_key(KEY_A).address
        assert signer_a.get_address() == signer_a.address
        assert signer_a.is_available()
        assert signer_a.get_account().address == signer_a.address

    def test_invalid_private_key(self):
        with pytest.raises(ParameterError):
            PrivateKeySigner("0x1234")

    def test_hex_and_bytes_messages_sign_the_same(self, signer_a):
        as_hex = signer_a.sign_message(SAFE_TX_HASH)
        as_bytes = signer_a.sign_message(Web3.to_bytes(hexstr=SAFE_TX_HASH))
        assert as_hex == as_bytes
        assert len(Web3.to_bytes(hexstr=as_hex)) == 65

    def test_create_signer_for_private_key(self, signer_b):
        owner = OwnerConfig(address=signer_b.address, private_key=KEY_B)
        assert create_signer(owner).address == signer_b.address

    def test_create_signer_resolves_env_key(self, signer_b, monkeypatch):
        monkeypatch.setenv("OWNER_KEY", KEY_B)
        owner = OwnerConfig(address=signer_b.address, private_key="${OWNER_KEY}")
        assert create_signer(owner).address == signer_b.address
        assert owner.private_key == "${OWNER_KEY}"

    def test_create_signer_rejects_placeholder(self, signer_b, monkeypatch):
        monkeypatch.delenv("OWNER_KEY", raising=False)
        owner = OwnerConfig(address=signer_b.address, private_key="${OWNER_KEY}")
        with pytest.raises(ConfigurationError, match="No private key"):
            create_signer(owner)

    def test_create_signer_rejects_mismatched_key(self, signer_a):
        owner = OwnerConfig(address=signer_a.address, private_key=KEY_B)
        with pytest.raises(ConfigurationError, match="resolves to"):
            create_signer(owner)

    def test_ledger_signer_is_lazy(self, signer_a):
        owner = OwnerConfig(
            address=signer_a.address, type="ledger", derivation_path="44'/60'/0'/0/0"
        )
        signer = create_signer(owner)
        assert isinstance(signer, LedgerSigner)
        assert signer.derivation_path == "44'/60'/0'/0/0"
        assert signer.get_account() is None


class TestKeystore:
    def test_keystore_owner(self, tmp_path, monkeypatch, signer_a):
        path = tmp_path / "keys" / "owner.json"
        address = create_keystore(path, "hunter2", KEY_A)
        assert address == signer_a.address
        assert load_address(path) == address

        with pytest.raises(FileExistsError):
            create_keystore(path, "hunter2", KEY_A)
        with pytest.raises(ValueError):
            decrypt_key(path, "wrong")

        owner = OwnerConfig(address=address, type="keystore", keystore_path=str(path))
        monkeypatch.delenv(KEYSTORE_PASSWORD_ENV, raising=False)
        with pytest.raises(ConfigurationError, match=KEYSTORE_PASSWORD_ENV):
            create_signer(owner)
        with pytest.raises(ConfigurationError):
            create_signer(owner, password="wrong")

        monkeypatch.setenv(KEYSTORE_PASSWORD_ENV, "hunter2")
        signer = create_signer(owner)
        assert signer.address == address
        assert signer.is_available()

    def test_missing_keystore(self, tmp_path, signer_a):
        assert load_address(tmp_path / "missing.json") is None
        owner = OwnerConfig(
            address=signer_a.address, type="keystore", keystore_path=str(tmp_path / "missing.json")
        )
        with pytest.raises(ConfigurationError, match="No keystore"):
            create_signer(owner, password="x")


# =====================================================================
#   Safe signature helpers
# =====================================================================


class TestSignatureHelpers:
    def test_pre_validated_signature_layout(self):
        owner = "0x" + "Ab" * 20
        sig = pre_validated_signature(owner)
        assert len(sig) == 2 + 130
        assert sig[2:66] == "0" * 24 + "ab" * 20
        assert sig[66:130] == "0" * 64
        assert sig.endswith("01")

    def test_adjust_v_marks_eth_sign(self, signer_a):
        raw = signer_a.sign_message(SAFE_TX_HASH)
        adjusted = adjust_eth_sign_v(raw)
        assert adjusted[:-2] == raw[:-2]
        assert int(adjusted[-2:], 16) == int(raw[-2:], 16) + 4
        assert recover_eth_sign_owner(SAFE_TX_HASH, adjusted) == signer_a.address

    def test_adjust_v_normalizes_zero_one(self):
        assert adjust_eth_sign_v("0x" + "00" * 64 + "01").endswith("20")

    def test_adjust_v_rejects_bad_length(self):
        with pytest.raises(SignatureError):
            adjust_eth_sign_v("0x1234")

    def test_execution_signatures_adds_executor(self, signer_a, signer_b):
        tx = SafeTransaction(hash=SAFE_TX_HASH, to=SAFE_ADDRESS, nonce=0, chain_id=CHAIN_ID)
        tx = tx.add_signature(signer_a.address, "0x" + "aa" * 65)
        owners = [signer_a.address, signer_b.address]

        packed = execution_signatures(tx, signer_b.address, owners, 2)
        assert pre_validated_signature(signer_b.address)[2:] in packed
        assert len(packed) == 2 + 4 * 65

        # non-owners and already-satisfied thresholds add nothing
        assert execution_signatures(tx, "0x" + "99" * 20, owners, 2) == tx.signatures_string()
        assert execution_signatures(tx, signer_b.address, owners, 1) == tx.signatures_string()


# =====================================================================
#   Web3SafeSDK (offline parts)
# =====================================================================


@pytest.fixture
def web3_sdk():
    return Web3SafeSDK(Web3(), SAFE_ADDRESS.lower(), chain_id=CHAIN_ID)


class TestWeb3SafeSDK:
    def test_checksums_safe_address(self, web3_sdk):
        assert web3_sdk.safe_address == SAFE_ADDRESS
        assert web3_sdk.chain_id == CHAIN_ID

    def test_encode_uses_safe_abi(self, web3_sdk):
        data = web3_sdk.encode("changeThreshold", [2])
        selector = Web3.to_hex(Web3.keccak(text="changeThreshold(uint256)")[:4])
        assert data.startswith(selector)
        assert data.endswith("02")
        assert len(data) == 2 + 8 + 64

    def test_sign_and_add_signature(self, web3_sdk, signer_a, signer_b):
        tx = SafeTransaction(hash=SAFE_TX_HASH, to=SAFE_ADDRESS, nonce=0, chain_id=CHAIN_ID)
        signature = web3_sdk.sign_transaction_hash(SAFE_TX_HASH, signer_a)

        signed = web3_sdk.add_signature(tx, signer_a.address.lower(), signature)
        assert signed.signatures == {signer_a.address: signature}

        with pytest.raises(SignatureError, match="recovers to"):
            web3_sdk.add_signature(tx, signer_b.address, signature)

    def test_abi_covers_owner_management(self):
        names = {entry["name"] for entry in SAFE_ABI}
        assert {"addOwnerWithThreshold", "removeOwner", "changeThreshold", "execTransaction"} <= names


# =====================================================================
#   Session cache
# =====================================================================


class TestSafeSession:
    def test_from_config(self):
        config = SaferConfig(chain="sepolia", rpc_url="http://127.0.0.1:8545")
        session = SafeSession.from_config(config)
        assert session.chain_id == CHAIN_ID
        assert session.rpc_url == "http://127.0.0.1:8545"

    def test_from_config_requires_rpc(self):
        with pytest.raises(ConfigurationError):
            SafeSession.from_config(SaferConfig(chain="sepolia"))

    def test_sdk_cached_per_safe(self):
        session = SafeSession("http://127.0.0.1:8545", CHAIN_ID)
        sdk = session.get_sdk(SAFE_ADDRESS)
        assert session.get_sdk(SAFE_ADDRESS.lower()) is sdk
        session.invalidate(SAFE_ADDRESS)
        assert session.get_sdk(SAFE_ADDRESS) is not sdk

    def test_invalidate_all_drops_connection(self):
        session = SafeSession("http://127.0.0.1:8545", CHAIN_ID)
        w3 = session.w3
        session.get_sdk(SAFE_ADDRESS)
        session.invalidate()
        assert session.w3 is not w3

    def test_sdk_requires_safe_address(self):
        with pytest.raises(SafeNotConfiguredError):
            SafeSession("http://127.0.0.1:8545", CHAIN_ID).get_sdk(None)

    def test_check_chain_accepts_matching_node(self):
        session = SafeSession("http://127.0.0.1:8545", CHAIN_ID)
        session._w3 = SimpleNamespace(eth=SimpleNamespace(chain_id=CHAIN_ID))
        session.check_chain()

    def test_check_chain_rejects_other_chain(self):
        session = SafeSession("http://127.0.0.1:8545", CHAIN_ID)
        session._w3 = SimpleNamespace(eth=SimpleNamespace(chain_id=1))
        with pytest.raises(ConfigurationError, match="serves chain 1"):
            session.check_chain()
