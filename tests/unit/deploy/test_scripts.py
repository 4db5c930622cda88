"""Tests for the remote script templates."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from ezdeploy.deploy.scripts import (
    SSH_CONFIG_FILTER,
    SSH_CONFIG_INSTALL_TEMPLATE,
    render,
    ssh_config_block,
)

ALIAS = "github.com-shop"

OTHER_BLOCK = """\
Host *
    ServerAliveInterval 30

# Deploy key for blog
Host github.com-blog
    HostName github.com
    IdentityFile /deployments/blog/keys/deploy_blog
"""


def _block(key_path: str = "/deployments/shop/keys/deploy_shop") -> str:
    return ssh_config_block("shop", ALIAS, "github.com", key_path)


def _install(config: Path, block: str) -> None:
    """Do what the install script does to ~/.ssh/config, locally."""
    filtered = subprocess.run(
        ["awk", "-v", f"host={ALIAS}", SSH_CONFIG_FILTER, str(config)],
        check=True,
        capture_output=True,
        text=True,
    ).stdout
    config.write_text(filtered + block)


@pytest.mark.skipif(shutil.which("awk") is None, reason="awk not installed")
class TestSSHConfigFilter:
    """Tests for replacing the deploy-key block in ~/.ssh/config."""

    def test_reinstall_is_stable(self, tmp_path: Path) -> None:
        config = tmp_path / "config"
        config.write_text(OTHER_BLOCK)

        _install(config, _block())
        first = config.read_text()
        _install(config, _block())
        _install(config, _block())

        assert config.read_text() == first
        assert first.count(f"Host {ALIAS}") == 1
        assert "\n\n\n" not in first

    def test_replaces_only_own_block(self, tmp_path: Path) -> None:
        config = tmp_path / "config"
        config.write_text(OTHER_BLOCK)

        _install(config, _block())
        _install(config, _block("/deployments/shop/keys/deploy_shop_v2"))

        text = config.read_text()
        assert text.startswith(OTHER_BLOCK)
        assert "deploy_shop_v2" in text
        assert "keys/deploy_shop\n" not in text
        assert "Host github.com-blog" in text

    def test_block_in_the_middle_is_removed(self, tmp_path: Path) -> None:
        config = tmp_path / "config"
        config.write_text(_block() + "\nHost bastion\n    User ops\n")

        _install(config, "")

        assert config.read_text() == "\nHost bastion\n    User ops\n"


class TestInstallTemplate:
    """Tests for the rendered ssh-config script."""

    def test_filter_is_quoted_into_the_script(self) -> None:
        script = render(
            SSH_CONFIG_INSTALL_TEMPLATE,
            alias=ALIAS,
            git_host="github.com",
            block=_block(),
        )
        assert "awk -v host=github.com-shop '/^[ \\t]*$/" in script
        assert script.count("Host github.com-shop") == 1
