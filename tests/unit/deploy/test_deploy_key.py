"""Tests for the deploy-key lifecycle state machine."""

from __future__ import annotations

import pytest
from conftest import AUTH_BANNER, PUBLIC_KEY, result

from ezdeploy.deploy.deploy_key import (
    DeployKeyLifecycle,
    KeyState,
    NeedsOperatorInput,
    deploy_key_instructions,
    extract_public_key,
    is_git_auth_success,
    run_deploy_key_flow,
)
from ezdeploy.deploy.operator import OperatorAnswer, PromptKind, ScriptedOperator
from ezdeploy.lib.errors import (
    AuthenticationError,
    DeploymentError,
    OperatorAbortError,
)
from ezdeploy.remote.transport import CommandResult

NEW_KEY = "ssh-rsa AAAAB3NzaC1yc2EnewKeyGenerated987654321== deploy-shop@203.0.113.10"
KEY_FILES = "test -f /deployments/shop/keys/deploy_shop"


@pytest.fixture
def lifecycle(transport, config, sleep) -> DeployKeyLifecycle:
    return DeployKeyLifecycle(transport, config, sleep=sleep)


def fresh_host(transport) -> None:
    """No key files until ssh-keygen has run."""
    transport.on_sequence(KEY_FILES, result(exit_code=1), result())
    transport.on("<<ssh-keygen>>", f"Generating...\n{NEW_KEY}\n")


class TestHelpers:
    """Tests for key extraction and the auth check."""

    def test_extract_public_key_from_noisy_output(self) -> None:
        output = f"Generating public/private rsa key pair.\n{PUBLIC_KEY}\ndone\n"
        assert extract_public_key(output) == PUBLIC_KEY

    def test_extract_public_key_none(self) -> None:
        assert extract_public_key("Permission denied") is None

    def test_auth_success_on_github_exit_code(self) -> None:
        assert is_git_auth_success(CommandResult("ssh -T", "", AUTH_BANNER, 1))

    def test_auth_fails_on_ssh_client_error(self) -> None:
        """ssh's own exit 255 fails even if the banner text shows up."""
        assert not is_git_auth_success(CommandResult("ssh -T", "", AUTH_BANNER, 255))

    def test_auth_requires_banner(self) -> None:
        assert not is_git_auth_success(
            CommandResult("ssh -T", "", "Permission denied (publickey).", 1)
        )

    def test_instructions_name_settings_page_and_title(self, config) -> None:
        text = deploy_key_instructions(config)
        assert "https://github.com/acme/shop/settings/keys" in text
        assert "Deploy-shop-203.0.113.10" in text


class TestFreshKey:
    """Tests for a host without a deploy key."""

    def test_generates_presents_and_verifies(self, transport, lifecycle) -> None:
        fresh_host(transport)
        transport.on("ssh -T", "", 1, AUTH_BANNER)

        step = lifecycle.advance()
        assert isinstance(step, NeedsOperatorInput)
        assert step.prompt == PromptKind.ACKNOWLEDGE_KEY
        assert step.public_key == NEW_KEY
        assert lifecycle.state == KeyState.PRESENTED_TO_USER

        step = lifecycle.advance(OperatorAnswer.CONTINUE)
        assert step == KeyState.VERIFIED
        assert lifecycle.generations == 1
        assert "ssh-config" in transport.script_labels()

    def test_key_is_bound_to_host_alias(self, transport, lifecycle) -> None:
        fresh_host(transport)
        transport.on("ssh -T", "", 1, AUTH_BANNER)

        key = run_deploy_key_flow(lifecycle, ScriptedOperator())

        assert key.host_alias == "github.com-shop"
        assert key.private_path == "/deployments/shop/keys/deploy_shop"
        ssh_config = dict(transport.scripts)["ssh-config"]
        assert "Host github.com-shop" in ssh_config
        assert "IdentityFile /deployments/shop/keys/deploy_shop" in ssh_config
        assert transport.ran("ssh -T -o BatchMode=yes")
        assert transport.ran("git@github.com-shop")

    def test_keygen_retries_then_fails(self, transport, lifecycle, sleeps) -> None:
        transport.fail(KEY_FILES)
        transport.on("<<ssh-keygen>>", "no key here")

        with pytest.raises(DeploymentError, match="deploy key generation"):
            lifecycle.advance()
        assert transport.script_labels().count("ssh-keygen") == 3
        assert sleeps == [5.0, 5.0]


class TestExistingKey:
    """Tests for a host that already has a key pair."""

    def test_accepted_key_is_not_presented(self, transport, lifecycle) -> None:
        transport.on("cat /deployments/shop/keys/deploy_shop.pub", PUBLIC_KEY)
        transport.on("ssh -T", "", 1, AUTH_BANNER)
        operator = ScriptedOperator()

        run_deploy_key_flow(lifecycle, operator)

        assert operator.prompts == []
        assert "ssh-keygen" not in transport.script_labels()
        assert lifecycle.key is not None
        assert lifecycle.key.public_key == PUBLIC_KEY

    def test_unaccepted_key_is_presented_without_regenerating(
        self, transport, lifecycle
    ) -> None:
        transport.on("cat /deployments/shop/keys/deploy_shop.pub", PUBLIC_KEY)
        transport.on_sequence(
            "ssh -T", result("", 255, "denied"), result("", 1, AUTH_BANNER)
        )

        step = lifecycle.advance()

        assert isinstance(step, NeedsOperatorInput)
        assert step.public_key == PUBLIC_KEY
        assert "ssh-keygen" not in transport.script_labels()
        assert lifecycle.advance(OperatorAnswer.CONTINUE) == KeyState.VERIFIED


class TestRecovery:
    """Tests for failed verification and operator choices."""

    def test_rejected_after_three_attempts(self, transport, lifecycle, sleeps) -> None:
        fresh_host(transport)
        transport.on("ssh -T", "", 255, "Permission denied (publickey).")
        operator = ScriptedOperator(
            [OperatorAnswer.CONTINUE, OperatorAnswer.RETRY, OperatorAnswer.RETRY]
        )

        with pytest.raises(AuthenticationError, match="3 attempt"):
            run_deploy_key_flow(lifecycle, operator)

        assert lifecycle.state == KeyState.REJECTED
        assert operator.prompts == [
            PromptKind.ACKNOWLEDGE_KEY,
            PromptKind.CHOOSE_RECOVERY,
            PromptKind.CHOOSE_RECOVERY,
        ]
        assert sleeps == [5.0, 5.0]

    def test_regenerate_deletes_previous_key_first(
        self, transport, lifecycle
    ) -> None:
        fresh_host(transport)
        transport.on_sequence(
            "ssh -T", result("", 255, "denied"), result("", 1, AUTH_BANNER)
        )
        operator = ScriptedOperator(
            [
                OperatorAnswer.CONTINUE,
                OperatorAnswer.REGENERATE,
                OperatorAnswer.CONTINUE,
            ]
        )

        run_deploy_key_flow(lifecycle, operator)

        keygen_scripts = [b for label, b in transport.scripts if label == "ssh-keygen"]
        assert len(keygen_scripts) == 2
        second = keygen_scripts[1]
        removed = second.index("rm -f /deployments/shop/keys/deploy_shop")
        assert removed < second.index("ssh-keygen -t rsa")
        assert lifecycle.generations == 2
        assert lifecycle.attempts == 0
        assert operator.prompts[-1] == PromptKind.ACKNOWLEDGE_KEY

    def test_abort_at_recovery_prompt(self, transport, lifecycle) -> None:
        fresh_host(transport)
        transport.on("ssh -T", "", 255, "denied")
        operator = ScriptedOperator([OperatorAnswer.CONTINUE, OperatorAnswer.ABORT])

        with pytest.raises(OperatorAbortError):
            run_deploy_key_flow(lifecycle, operator)

    def test_abort_at_acknowledge_prompt(self, transport, lifecycle) -> None:
        fresh_host(transport)
        lifecycle.advance()
        with pytest.raises(OperatorAbortError):
            lifecycle.advance(OperatorAnswer.ABORT)

    def test_missing_key_files_trigger_regeneration(
        self, transport, lifecycle
    ) -> None:
        transport.on_sequence(
            KEY_FILES, result(exit_code=1), result(exit_code=1), result()
        )
        transport.on("<<ssh-keygen>>", NEW_KEY)
        transport.on("ssh -T", "", 1, AUTH_BANNER)

        lifecycle.advance()
        step = lifecycle.advance(OperatorAnswer.CONTINUE)

        assert isinstance(step, NeedsOperatorInput)
        assert lifecycle.generations == 2
