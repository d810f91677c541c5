import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aws_cdk as cdk
from aws_cdk import CfnOutput, Duration, RemovalPolicy, Stack
from aws_cdk import aws_apigateway as apigw
from aws_cdk import aws_lambda as lambda_
from aws_cdk import aws_logs as logs
from aws_cdk.aws_lambda_python_alpha import PythonFunction
from constructs import Construct


@dataclass(frozen=True)
class OtsRelayApiProps:
    stage_name: str = "prod"
    mount: str = "ots-proxy"
    lambda_timeout_seconds: int = 15
    lambda_memory_mb: int = 256


class OtsRelayApi(Construct):
    """
    "Sub-stack" construct for the browser -> API Gateway -> Lambda -> OpenTimestamps calendar relay.
    Intended to be embedded into a larger CDK stack later.
    """

    def __init__(self, scope: Construct, construct_id: str, *, props: OtsRelayApiProps) -> None:
        super().__init__(scope, construct_id)

        mount = props.mount.strip("/")
        if mount == "" or "/" in mount:
            raise ValueError(f"mount must be a single path segment: {props.mount!r}")

        lambda_entry = Path(__file__).resolve().parents[1] / "lambda" / "ots_relay"
        if not lambda_entry.exists():
            raise ValueError(f"lambda entry not found: {lambda_entry}")

        relay_fn = PythonFunction(
            self,
            "OtsRelayHandler",
            entry=str(lambda_entry),
            index="handler.py",
            handler="handler",
            runtime=lambda_.Runtime.PYTHON_3_11,
            # The function sets no upstream timeout of its own by default; this bounds each call.
            timeout=Duration.seconds(props.lambda_timeout_seconds),
            memory_size=props.lambda_memory_mb,
            environment={
                "OTS_RELAY_MOUNT": f"/{mount}/",
                "OTS_RELAY_UPSTREAM_TIMEOUT_SECONDS": os.getenv("OTS_RELAY_UPSTREAM_TIMEOUT_SECONDS", ""),
            },
        )

        access_logs = logs.LogGroup(
            self,
            "AccessLogs",
            retention=logs.RetentionDays.ONE_MONTH,
            removal_policy=RemovalPolicy.DESTROY,
        )

        api = apigw.RestApi(
            self,
            "OtsRelayApi",
            rest_api_name="ots-calendar-relay",
            deploy_options=apigw.StageOptions(
                stage_name=props.stage_name,
                metrics_enabled=True,
                logging_level=apigw.MethodLoggingLevel.INFO,
                data_trace_enabled=False,
                access_log_destination=apigw.LogGroupLogDestination(access_logs),
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=False,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=False,
                ),
            ),
            # Timestamp digests and proofs are binary; the handler base64-decodes/encodes them.
            binary_media_types=["*/*"],
            endpoint_types=[apigw.EndpointType.REGIONAL],
        )

        integration = apigw.LambdaIntegration(relay_fn, proxy=True)

        # Browsers call this unauthenticated; OPTIONS is answered by the function itself.
        relay_root = api.root.add_resource(mount)
        relay_root.add_method("ANY", integration, authorization_type=apigw.AuthorizationType.NONE)
        relay_root.add_resource("{proxy+}").add_method(
            "ANY",
            integration,
            authorization_type=apigw.AuthorizationType.NONE,
        )

        self.api = api
        self.mount = mount
        self.lambda_fn = relay_fn


class OtsRelayApiStack(Stack):
    """
    Small wrapper stack so this construct can be deployed standalone.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        stage_name: str,
        mount: str,
        env: Optional[cdk.Environment] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, env=env, **kwargs)

        relay = OtsRelayApi(
            self,
            "Relay",
            props=OtsRelayApiProps(stage_name=stage_name, mount=mount),
        )

        CfnOutput(self, "RelayBaseUrl", value=f"{relay.api.url}{relay.mount}")
