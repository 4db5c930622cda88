"""Per-project Git deploy key lifecycle.

The key lives on the target server at ``/deployments/<name>/keys`` and is
bound to an SSH host alias (``github.com-<name>``) so each project uses its
own key. Registering the key with the Git host is a manual step, so the
lifecycle is a state machine that suspends whenever it needs the operator
and resumes with the operator's answer:

    ABSENT -> GENERATED -> PRESENTED_TO_USER -> PENDING_VERIFICATION
        -> VERIFIED | REJECTED

``run_deploy_key_flow`` drives the machine with an ``Operator``.
"""

from __future__ import annotations

import re
import shlex
import time
from dataclasses import dataclass
from enum import Enum

from ezdeploy.deploy.operator import Operator, OperatorAnswer, PromptKind
from ezdeploy.deploy.scripts import (
    KEYGEN_TEMPLATE,
    SSH_CONFIG_INSTALL_TEMPLATE,
    render,
    ssh_config_block,
)
from ezdeploy.lib.errors import (
    AuthenticationError,
    DeploymentError,
    OperatorAbortError,
)
from ezdeploy.lib.logging_config import get_logger
from ezdeploy.lib.retry import RetryPolicy, SleepFn
from ezdeploy.models.deployment import DeploymentConfig
from ezdeploy.remote.transport import CommandResult, Transport

logger = get_logger(__name__)

PUBLIC_KEY_PATTERN = re.compile(
    r"^((?:ssh|ecdsa)-[a-zA-Z0-9-]+ [A-Za-z0-9+/=]+)(?: [^\r\n]*)?$", re.MULTILINE
)

# Banners printed by Git hosts on a successful ``ssh -T``
AUTH_SUCCESS_BANNERS = (
    "successfully authenticated",
    "Welcome to GitLab",
    "authenticated via",
)

# ssh itself exits 255 on connection or authentication errors
SSH_CLIENT_ERROR = 255

KEYGEN_POLICY = RetryPolicy(attempts=3, delay=5.0)
VERIFY_POLICY = RetryPolicy(attempts=3, delay=5.0)


class KeyState(str, Enum):
    """States of the deploy-key lifecycle."""

    ABSENT = "absent"
    GENERATED = "generated"
    PRESENTED_TO_USER = "presented_to_user"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (KeyState.VERIFIED, KeyState.REJECTED)


@dataclass(frozen=True)
class DeployKey:
    """A deploy key pair on the target server."""

    private_path: str
    public_key: str
    host_alias: str


@dataclass(frozen=True)
class NeedsOperatorInput:
    """Suspend point: the lifecycle cannot continue without an answer."""

    prompt: PromptKind
    public_key: str
    instructions: str


KeyStep = KeyState | NeedsOperatorInput


def extract_public_key(text: str) -> str | None:
    """Return the first ``ssh-<alg> <base64> [comment]`` line in ``text``.

    Remote output mixes the key with banners and progress messages; this is
    the single place that picks the key out.
    """
    match = PUBLIC_KEY_PATTERN.search(text or "")
    if match is None:
        return None
    return match.group(0).strip()


def is_git_auth_success(result: CommandResult) -> bool:
    """Decide whether ``ssh -T git@<alias>`` authenticated.

    Git hosts refuse shell access, so a successful test still exits 1 on
    GitHub; only ssh's own 255 is a hard failure. The banner is required.
    """
    if result.exit_code == SSH_CLIENT_ERROR:
        return False
    output = result.output
    return any(banner in output for banner in AUTH_SUCCESS_BANNERS)


def deploy_key_instructions(config: DeploymentConfig) -> str:
    """Operator instructions for registering the key with the Git host."""
    title = f"Deploy-{config.project_name}-{config.server.ip}"
    repository = config.repository
    if repository.git_host == "github.com":
        location = (
            f"https://github.com/{repository.repo_path}/settings/keys "
            "(Settings > Deploy keys > Add deploy key)"
        )
    else:
        location = (
            f"the deploy keys settings of {repository.repo_path} "
            f"on {repository.git_host}"
        )
    return (
        "To let the server clone the repository:\n"
        "  1. Copy the key above\n"
        f"  2. Open {location}\n"
        f"  3. Title: {title}\n"
        "  4. Paste the key and check 'Allow write access'\n"
        "  5. Save the key"
    )


class DeployKeyLifecycle:
    """State machine creating, presenting and verifying a project's deploy key.

    Call ``advance()`` repeatedly. It returns either a terminal ``KeyState``
    or a ``NeedsOperatorInput``; in the latter case pass the operator's
    answer to the next ``advance`` call.
    """

    def __init__(
        self,
        transport: Transport,
        config: DeploymentConfig,
        *,
        keygen_policy: RetryPolicy = KEYGEN_POLICY,
        verify_policy: RetryPolicy = VERIFY_POLICY,
        sleep: SleepFn = time.sleep,
    ) -> None:
        self.transport = transport
        self.config = config
        self.keygen_policy = keygen_policy
        self.verify_policy = verify_policy
        self.sleep = sleep

        self.state = KeyState.ABSENT
        self.key: DeployKey | None = None
        self.attempts = 0
        self.generations = 0
        self._reused = False
        self._awaiting: PromptKind | None = None

    @property
    def instructions(self) -> str:
        return deploy_key_instructions(self.config)

    # Remote operations

    def _prepare_dirs(self) -> None:
        config = self.config
        dirs = " ".join(
            shlex.quote(d)
            for d in (config.keys_dir, config.configs_dir, config.iac_dir)
        )
        self.transport.run(f"mkdir -p {dirs}", sudo=True)
        self.transport.run(
            f"chown -R $(id -un):$(id -gn) {shlex.quote(config.project_root)}",
            sudo=True,
        )

    def _key_files_exist(self) -> bool:
        path = shlex.quote(self.config.deploy_key_path)
        pub = shlex.quote(self.config.deploy_key_path + ".pub")
        return self.transport.run(f"test -f {path} && test -f {pub}", check=False).ok

    def _read_existing(self) -> str | None:
        result = self.transport.run(
            f"cat {shlex.quote(self.config.deploy_key_path + '.pub')}", check=False
        )
        return extract_public_key(result.stdout) if result.ok else None

    def _install_ssh_config(self) -> None:
        config = self.config
        block = ssh_config_block(
            project=config.project_name,
            alias=config.git_host_alias,
            git_host=config.repository.git_host,
            key_path=config.deploy_key_path,
        )
        self.transport.run_script(
            render(
                SSH_CONFIG_INSTALL_TEMPLATE,
                alias=config.git_host_alias,
                git_host=config.repository.git_host,
                block=block,
            ),
            label="ssh-config",
        )

    def _generate(self) -> str:
        """Delete any existing pair and generate a new one, with retries."""
        config = self.config
        script = render(
            KEYGEN_TEMPLATE,
            keys_dir=config.keys_dir,
            key_path=config.deploy_key_path,
            comment=f"deploy-{config.project_name}@{config.server.ip}",
        )
        last_output = ""
        for attempt in range(1, self.keygen_policy.attempts + 1):
            result = self.transport.run_script(script, check=False, label="ssh-keygen")
            public_key = extract_public_key(result.stdout)
            if result.ok and public_key:
                self.generations += 1
                logger.info(f"Generated deploy key {config.deploy_key_path}")
                return public_key
            last_output = result.output
            logger.warning(
                f"Deploy key generation attempt {attempt}/"
                f"{self.keygen_policy.attempts} returned no key"
            )
            if attempt < self.keygen_policy.attempts:
                self.sleep(self.keygen_policy.delay_for(attempt))
        raise DeploymentError(
            "deploy key generation",
            f"no public key after {self.keygen_policy.attempts} attempts: "
            f"{last_output[-500:]}",
        )

    def _set_key(self, public_key: str) -> None:
        self.key = DeployKey(
            private_path=self.config.deploy_key_path,
            public_key=public_key,
            host_alias=self.config.git_host_alias,
        )

    def test_auth(self) -> bool:
        """Run ``ssh -T`` against the project's host alias."""
        result = self.transport.run(
            "ssh -T -o BatchMode=yes -o ConnectTimeout=15 "
            f"git@{self.config.git_host_alias}",
            check=False,
        )
        ok = is_git_auth_success(result)
        logger.debug(f"Git auth test via {self.config.git_host_alias}: {ok}")
        return ok

    def regenerate(self) -> DeployKey:
        """Replace the key pair and return to GENERATED.

        The previous private and public key files are removed before the new
        pair is generated. The verification counter starts over.
        """
        self._prepare_dirs()
        self._set_key(self._generate())
        self._install_ssh_config()
        self._reused = False
        self.attempts = 0
        self._awaiting = None
        self.state = KeyState.GENERATED
        assert self.key is not None
        return self.key

    # State machine

    def _suspend(self, prompt: PromptKind) -> NeedsOperatorInput:
        self._awaiting = prompt
        return NeedsOperatorInput(
            prompt=prompt,
            public_key=self.key.public_key if self.key else "",
            instructions=self.instructions,
        )

    def _resume(self, answer: OperatorAnswer | None) -> None:
        prompt = self._awaiting
        self._awaiting = None
        if answer == OperatorAnswer.ABORT:
            raise OperatorAbortError()
        if prompt == PromptKind.ACKNOWLEDGE_KEY:
            self.state = KeyState.PENDING_VERIFICATION
        elif answer == OperatorAnswer.REGENERATE:
            self.regenerate()
        elif answer == OperatorAnswer.RETRY:
            self.sleep(self.verify_policy.delay_for(self.attempts))
        else:
            raise ValueError(f"Unexpected answer {answer!r} to {prompt}")

    def advance(self, answer: OperatorAnswer | None = None) -> KeyStep:
        """Run until the next suspend point or a terminal state.

        Args:
            answer: Operator's answer to the previous ``NeedsOperatorInput``

        Returns:
            ``KeyState.VERIFIED``, ``KeyState.REJECTED`` or a suspend point

        Raises:
            OperatorAbortError: If the answer is ABORT
        """
        if self._awaiting is not None:
            self._resume(answer)

        while not self.state.is_terminal:
            if self.state == KeyState.ABSENT:
                self._prepare_dirs()
                existing = self._read_existing() if self._key_files_exist() else None
                if existing:
                    logger.info(
                        f"Using existing deploy key for {self.config.project_name}"
                    )
                    self._set_key(existing)
                    self._reused = True
                else:
                    self._set_key(self._generate())
                self._install_ssh_config()
                self.state = KeyState.GENERATED

            elif self.state == KeyState.GENERATED:
                if self._reused and self.test_auth():
                    self.state = KeyState.VERIFIED
                    break
                self._reused = False
                self.state = KeyState.PRESENTED_TO_USER
                return self._suspend(PromptKind.ACKNOWLEDGE_KEY)

            elif self.state == KeyState.PRESENTED_TO_USER:
                # Reached only when a caller resumes without an answer
                return self._suspend(PromptKind.ACKNOWLEDGE_KEY)

            elif self.state == KeyState.PENDING_VERIFICATION:
                if not self._key_files_exist():
                    logger.warning("Deploy key files missing; regenerating")
                    self.regenerate()
                    continue
                if self.test_auth():
                    self.state = KeyState.VERIFIED
                    break
                self.attempts += 1
                logger.warning(
                    f"Deploy key not accepted "
                    f"(attempt {self.attempts}/{self.verify_policy.attempts})"
                )
                if self.attempts >= self.verify_policy.attempts:
                    self.state = KeyState.REJECTED
                    break
                return self._suspend(PromptKind.CHOOSE_RECOVERY)

        return self.state


def run_deploy_key_flow(lifecycle: DeployKeyLifecycle, operator: Operator) -> DeployKey:
    """Drive ``lifecycle`` to VERIFIED, asking ``operator`` at each suspend point.

    Raises:
        AuthenticationError: If the key is rejected after every attempt
        OperatorAbortError: If the operator aborts
    """
    step = lifecycle.advance()
    while isinstance(step, NeedsOperatorInput):
        answer = operator.answer(step.prompt, step.public_key, step.instructions)
        step = lifecycle.advance(answer)

    if step == KeyState.REJECTED:
        raise AuthenticationError(
            lifecycle.config.git_host_alias,
            f"deploy key not accepted after {lifecycle.attempts} attempt(s). "
            "Check that the key is registered and has access to "
            f"{lifecycle.config.repository.repo_path}",
        )
    assert lifecycle.key is not None
    return lifecycle.key
