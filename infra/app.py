#!/usr/bin/env python3

import aws_cdk as cdk

from stacks.ots_relay_api_substack import OtsRelayApiStack


app = cdk.App()

OtsRelayApiStack(
    app,
    "OtsCalendarRelayApi",
    stage_name=app.node.try_get_context("stage_name") or "prod",
    mount=app.node.try_get_context("mount") or "ots-proxy",
)

app.synth()
