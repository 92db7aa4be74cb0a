# matrixci_workflow.py
# Build and test the AMQP client crates against a live RabbitMQ broker,
# once per toolchain channel.
from __future__ import annotations

from matrixci import cmd, job, matrix, on_pull_request, on_push, on_schedule, pipeline, rabbitmq, sh


def workflow():
    return pipeline(
        "Build and test",
        job(
            "build_and_test",
            sh("Install latest ${{ matrix.rust }}", "rustup toolchain install ${{ matrix.rust }} --profile minimal"),
            sh("Select ${{ matrix.rust }}", "rustup override set ${{ matrix.rust }}"),
            cmd("Run cargo check", "cargo", "check", "--all", "--bins", "--examples", "--tests", "--all-features"),
            # without dev-dependencies to catch missing feature flags
            cmd(
                "Run cargo check (-Z features=dev_dep)",
                "cargo", "check", "-Z", "features=dev_dep",
                when="startsWith(matrix.rust, 'nightly')",
            ),
            cmd("Run cargo test", "cargo", "test"),
            sh("Remove toolchain override", "rustup override unset", always=True),
            services=[rabbitmq(user="guest", password="guest", vhost="/")],
            runs_on="${{ matrix.os }}",
        ),
        matrix=matrix(
            os=["ubuntu-latest"],
            rust=["nightly", "beta", "stable", "1.74.0"],
        ),
        on=[on_push(), on_pull_request(), on_schedule("0 12 * * 1")],
        fail_fast=False,
    )
