"""
The fixed contract between the orchestrator and a repository under test.

Every repository is checked out, built with BUILD_COMMAND and exercised with
RUN_COMMAND, which must leave a pcap at CAPTURE_PATH inside the checkout. The run
step is started through the runner binary so it can be stopped by closing stdin.
"""
import shlex
from dataclasses import dataclass
from typing import Tuple
from ixyci.models.execution import Artifact, ArtifactSet, CommandSequence, Step
from ixyci.models.job import TriggerEvent

REMOTE_RUNNER_PATH = "ixy-runner"


@dataclass(frozen=True)
class RunContract:
    build_command: str
    run_command: str
    capture_path: str
    runner_binary_path: str
    packets: int
    pci_addresses: Tuple[Tuple[str, str], ...]  # (env var, pci address)
    clone_base_url: str = "https://github.com"


def build_artifact_set(contract: RunContract) -> ArtifactSet:
    return ArtifactSet(artifacts=(
        Artifact(local_path=contract.runner_binary_path, remote_path=REMOTE_RUNNER_PATH, mode=0o755),
    ))


def build_command_sequence(trigger: TriggerEvent, contract: RunContract) -> CommandSequence:
    checkout_dir = trigger.source_repository.split("/")[1]
    clone_url = f"{contract.clone_base_url}/{trigger.source_repository}"
    quoted_dir = shlex.quote(checkout_dir)

    checkout = Step(
        name="checkout",
        command=(
            "(command -v git >/dev/null || (sudo apt-get update && sudo apt-get install -y git))"
            f" && rm -rf {quoted_dir}"
            f" && git clone --recurse-submodules {shlex.quote(clone_url)} {quoted_dir}"
            f" && cd {quoted_dir}"
            f" && git checkout {shlex.quote(trigger.commit)}"
            " && git submodule update --init --recursive"
        ),
    )
    build = Step(name="build", command=contract.build_command, cwd=checkout_dir)
    run_env = contract.pci_addresses + (
        ("PCAP_OUT", contract.capture_path),
        ("PCAP_N", str(contract.packets)),
    )
    run = Step(name="run", command=contract.run_command, cwd=checkout_dir, env=run_env, cancellable=True)
    return CommandSequence(steps=(checkout, build, run), capture_path=f"{checkout_dir}/{contract.capture_path}")


def render_step(step: Step) -> str:
    env = " ".join(f"{k}={shlex.quote(v)}" for k, v in step.env)
    if step.cancellable:
        # sudo so the runner may kill sudo'ed children
        prefix = f"sudo env {env} " if env else "sudo "
        return f"{prefix}$HOME/{REMOTE_RUNNER_PATH} {step.command}"
    if env:
        return f"env {env} {step.command}"
    return step.command
