"""Remote shell scripts for environment setup and the compile step."""

from __future__ import annotations

import shlex
import textwrap

from .config import REMOTE_BUILD_ROOT, BuildConfig

SETUP_MARKER = "SETUP_SUCCESS"
BUILD_MARKER = "BUILD_SUCCESS"


def render_setup_script(config: BuildConfig) -> str:
    node_version = shlex.quote(config.node_version)
    return textwrap.dedent(
        f"""\
        #!/bin/bash
        set -euxo pipefail
        export DEBIAN_FRONTEND=noninteractive

        echo "=== Installing system dependencies ==="
        apt-get update
        apt-get install -y \\
            build-essential \\
            curl \\
            git \\
            pkg-config \\
            libssl-dev \\
            clang \\
            llvm \\
            cmake \\
            protobuf-compiler

        echo "=== Installing Node.js {config.node_version} ==="
        curl -fsSL https://deb.nodesource.com/setup_{node_version}.x | bash -
        apt-get install -y nodejs
        npm install -g pnpm

        echo "=== Installing Rust ==="
        curl --proto "=https" --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- -y
        source "$HOME/.cargo/env"
        rustup default stable

        echo "=== Installing just ==="
        cargo install just

        echo "=== Setup complete ==="
        rustc --version
        node --version
        just --version

        echo "{SETUP_MARKER}"
        """
    )


def render_build_script(config: BuildConfig) -> str:
    branch = shlex.quote(config.branch)
    repo_url = shlex.quote(config.repo_url)
    profile = shlex.quote(config.build_profile)
    package = shlex.quote(config.cargo_package)
    output_dir = f"target/{config.build_profile}"
    binary = shlex.quote(f"{output_dir}/{config.binary_name}")
    return textwrap.dedent(
        f"""\
        #!/bin/bash
        set -euxo pipefail

        # needed for both fresh and snapshot builds
        if [[ -f "$HOME/.cargo/env" ]]; then
            source "$HOME/.cargo/env"
        fi

        echo "=== Preparing build directory ==="
        rm -rf {REMOTE_BUILD_ROOT}

        echo "=== Cloning repository ==="
        mkdir -p ~/.ssh
        ssh-keyscan github.com >> ~/.ssh/known_hosts 2>/dev/null

        git clone --depth 1 --branch {branch} {repo_url} {REMOTE_BUILD_ROOT}
        cd {REMOTE_BUILD_ROOT}

        echo "=== Building JavaScript dependencies ==="
        (cd scripts && npm ci)
        just rush install
        just rush build -t system-udfs -t udf-runtime

        echo "=== Building Rust project ==="
        cargo build --profile {profile} -p {package}

        echo "=== Build complete ==="
        ls -la {binary} || ls -la {shlex.quote(output_dir)}/

        echo "{BUILD_MARKER}"
        """
    )
