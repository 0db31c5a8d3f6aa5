"""End-to-end CLI tests: config, create, sign, execute against an in-memory Safe."""

import httpx
import pytest
from typer.testing import CliRunner

from safer_wallet.cli import app as cli
from safer_wallet.config import load_config
from safer_wallet.storage.files import FileTransactionStore
from safer_wallet.storage.ipfs import IPFSTransactionStore
from safer_wallet.storage.models import TransactionStatus

from conftest import CHAIN_ID, KEY_A, KEY_B, RECEIVER, SAFE_ADDRESS

runner = CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("SAFER_HOME", str(tmp_path))
    monkeypatch.delenv("SAFER_CONFIG", raising=False)
    return tmp_path


@pytest.fixture
def fake_sdk(sdk, monkeypatch):
    monkeypatch.setattr(cli, "_open_sdk", lambda config, safe_address: sdk)
    return sdk


def invoke(*args):
    result = runner.invoke(cli.app, list(args))
    return result


def _configure(signer_a, signer_b):
    assert invoke(
        "config", "set", "--chain", "sepolia", "--safe", SAFE_ADDRESS,
        "--rpc-url", "http://127.0.0.1:8545",
    ).exit_code == 0
    for name, signer, key in (("alice", signer_a, KEY_A), ("bob", signer_b, KEY_B)):
        result = invoke(
            "config", "owner-add", "--address", signer.address,
            "--name", name, "--private-key", key,
        )
        assert result.exit_code == 0, result.output


def _stored(home):
    return FileTransactionStore(home / "transactions", SAFE_ADDRESS, CHAIN_ID)


# =====================================================================
#   config
# =====================================================================


class TestConfigCommands:
    def test_set_and_show(self, home, signer_a, signer_b):
        _configure(signer_a, signer_b)

        config = load_config(home / "config.yaml")
        assert config.chain == str(CHAIN_ID)
        assert config.default_safe == SAFE_ADDRESS
        assert [o.name for o in config.owners] == ["alice", "bob"]

        result = invoke("config", "show")
        assert result.exit_code == 0
        assert "alice" in result.output
        assert KEY_A not in result.output

    def test_unknown_chain(self, home):
        result = invoke("config", "set", "--chain", "atlantis")
        assert result.exit_code == 1
        assert "Unknown chain" in result.output

    def test_owner_add_validates(self, home):
        result = invoke("config", "owner-add", "--address", "0x1234", "--private-key", KEY_A)
        assert result.exit_code == 1

    def test_config_set_keeps_env_placeholders(self, home, signer_a, monkeypatch):
        monkeypatch.setenv("OWNER_KEY", KEY_A)
        result = invoke(
            "config", "owner-add", "--address", signer_a.address, "--private-key", "${OWNER_KEY}",
        )
        assert result.exit_code == 0, result.output
        assert invoke("config", "set", "--chain", "sepolia").exit_code == 0

        written = (home / "config.yaml").read_text()
        assert "${OWNER_KEY}" in written
        assert KEY_A[2:] not in written

    def test_owner_remove(self, home, signer_a, signer_b):
        _configure(signer_a, signer_b)
        assert invoke("config", "owner-remove", "bob").exit_code == 0
        assert [o.name for o in load_config(home / "config.yaml").owners] == ["alice"]
        assert invoke("config", "owner-remove", "mallory").exit_code == 1


# =====================================================================
#   Transaction lifecycle
# =====================================================================


class TestLifecycle:
    def test_create_sign_execute(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)

        result = invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        assert result.exit_code == 0, result.output
        (tx,) = _stored(home).list()
        assert tx.tx_type == "ethTransfer"
        ref = tx.hash[-8:]

        result = invoke("txs", "list")
        assert result.exit_code == 0
        assert "ethTransfer" in result.output

        result = invoke("sign", ref, "--owner", "alice")
        assert result.exit_code == 0, result.output
        assert "1/2" in result.output

        result = invoke("sign", ref, "--owner", "alice")
        assert result.exit_code == 1
        assert "DUPLICATE_SIGNATURE" in result.output

        result = invoke("execute", ref, "--owner", "bob", "--yes", "--gas-boost", "10")
        assert result.exit_code == 0, result.output
        assert "Executed" in result.output
        assert "sepolia.etherscan.io/tx/" in result.output

        final = _stored(home).load(ref)
        assert final.status is TransactionStatus.SUCCESSFUL
        assert final.metadata["executor"] == signer_b.address
        options = fake_sdk.executed[0][2]
        assert options.gas_price == 22_000_000_000

    def test_execute_without_enough_signatures(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        ref = _stored(home).list()[0].hash[-8:]
        invoke("sign", ref, "--owner", "alice")

        result = invoke("execute", ref, "--owner", "alice", "--yes")

        assert result.exit_code == 1
        assert "INSUFFICIENT_SIGNATURES" in result.output
        assert fake_sdk.executed == []
        assert _stored(home).load(ref).status is TransactionStatus.PENDING

    def test_failed_broadcast_is_persisted(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        ref = _stored(home).list()[0].hash[-8:]
        invoke("sign", ref, "--owner", "alice")
        fake_sdk.broadcast_error = RuntimeError("replacement transaction underpriced")

        result = invoke("execute", ref, "--owner", "bob", "--yes")

        assert result.exit_code == 1
        stored = _stored(home).load(ref)
        assert stored.status is TransactionStatus.PENDING
        assert stored.metadata["errorMessage"] == "replacement transaction underpriced"

    def test_several_owners_need_selection(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        ref = _stored(home).list()[0].hash[-8:]
        result = invoke("sign", ref)
        assert result.exit_code == 1
        assert "--owner" in result.output

    def test_admin_change_threshold(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        result = invoke("admin", "change-threshold", "3")
        assert result.exit_code == 0, result.output
        (tx,) = _stored(home).list()
        assert tx.tx_type == "changeThreshold"
        assert tx.to == SAFE_ADDRESS

    def test_insufficient_balance_reported(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        result = invoke("transfer", "eth", "--to", RECEIVER, "--amount", "5")
        assert result.exit_code == 1
        assert "INSUFFICIENT_BALANCE" in result.output
        assert _stored(home).list() == []


# =====================================================================
#   Sharing
# =====================================================================


class TestSharing:
    def test_export_then_import(self, home, tmp_path, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        tx = _stored(home).list()[0]
        out_dir = tmp_path / "shared"

        result = invoke("txs", "export", tx.hash[-8:], "--out", str(out_dir))
        assert result.exit_code == 0, result.output
        (exported,) = out_dir.iterdir()

        other_home = tmp_path / "other"
        result = runner.invoke(
            cli.app, ["txs", "import", str(exported)], env={"SAFER_HOME": str(other_home)}
        )
        assert result.exit_code == 0, result.output
        assert (other_home / "transactions" / SAFE_ADDRESS / "sepolia").is_dir()

    def test_import_missing_file(self, home):
        result = invoke("txs", "import", str(home / "nope.safer"))
        assert result.exit_code == 1

    def test_export_to_ipfs_needs_credentials(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        ref = _stored(home).list()[0].hash[-8:]
        result = invoke("txs", "export", ref, "--ipfs")
        assert result.exit_code == 1
        assert "CONFIGURATION_ERROR" in result.output

    def test_ipfs_pinning_failure_reported(self, home, fake_sdk, signer_a, signer_b, monkeypatch):
        _configure(signer_a, signer_b)
        invoke("config", "set", "--pinata-api-key", "key", "--pinata-secret", "secret")
        invoke("transfer", "eth", "--to", RECEIVER, "--amount", "0.01")
        ref = _stored(home).list()[0].hash[-8:]
        failing = httpx.MockTransport(lambda request: httpx.Response(503))
        monkeypatch.setattr(
            cli, "IPFSTransactionStore",
            lambda config: IPFSTransactionStore(config, transport=failing),
        )

        result = invoke("txs", "export", ref, "--ipfs")

        assert result.exit_code == 1
        assert "IPFS_ERROR" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_show_unknown_transaction(self, home, signer_a, signer_b):
        _configure(signer_a, signer_b)
        result = invoke("txs", "show", "99")
        assert result.exit_code == 1


# =====================================================================
#   info
# =====================================================================


class TestInfo:
    def test_shows_network_label_and_native_symbol(self, home, fake_sdk, signer_a, signer_b):
        _configure(signer_a, signer_b)
        result = invoke("info")
        assert result.exit_code == 0, result.output
        assert "Sepolia Testnet" in result.output
        assert "ETH" in result.output
        assert "Threshold: 2 of 3" in result.output
