from __future__ import annotations

from typing import Any, Iterator, Tuple

import boto3
import pytest
from botocore.stub import Stubber

import aws_control

TG_ARN = "arn:aws:elasticloadbalancing:us-east-1:123456789012:targetgroup/web/0123456789abcdef"


def _client(service: str) -> Any:
    return boto3.client(
        service,
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def ec2() -> Iterator[Tuple[aws_control.Ec2Control, Stubber]]:
    client = _client("ec2")
    with Stubber(client) as stubber:
        yield aws_control.Ec2Control(client), stubber
        stubber.assert_no_pending_responses()


@pytest.fixture
def elbv2() -> Iterator[Tuple[aws_control.TargetGroupControl, Stubber]]:
    client = _client("elbv2")
    with Stubber(client) as stubber:
        yield aws_control.TargetGroupControl(client), stubber
        stubber.assert_no_pending_responses()


def _state(name: str, code: int) -> dict:
    return {"Code": code, "Name": name}


def test_list_instances_flattens_reservations(ec2: Tuple[aws_control.Ec2Control, Stubber]) -> None:
    control, stubber = ec2
    stubber.add_response(
        "describe_instances",
        {
            "Reservations": [
                {
                    "Instances": [
                        {
                            "InstanceId": "i-0001",
                            "State": _state("running", 16),
                            "Tags": [{"Key": "Auto Off", "Value": "0 18 * * *"}],
                        },
                        {"InstanceId": "i-0002", "State": _state("stopped", 80)},
                    ]
                },
                {"Instances": [{"InstanceId": "i-0003", "State": _state("running", 16)}]},
            ]
        },
        {},
    )
    instances = control.list_instances()
    assert [instance["InstanceId"] for instance in instances] == ["i-0001", "i-0002", "i-0003"]


def test_stop_start_terminate_return_state_change(ec2: Tuple[aws_control.Ec2Control, Stubber]) -> None:
    control, stubber = ec2
    stubber.add_response(
        "stop_instances",
        {
            "StoppingInstances": [
                {"InstanceId": "i-0001", "PreviousState": _state("running", 16), "CurrentState": _state("stopping", 64)}
            ]
        },
        {"InstanceIds": ["i-0001"], "Force": False},
    )
    stubber.add_response(
        "start_instances",
        {
            "StartingInstances": [
                {"InstanceId": "i-0002", "PreviousState": _state("stopped", 80), "CurrentState": _state("pending", 0)}
            ]
        },
        {"InstanceIds": ["i-0002"], "AdditionalInfo": "Terminator Auto On, Cron: 0 8 * * *"},
    )
    stubber.add_response(
        "terminate_instances",
        {
            "TerminatingInstances": [
                {
                    "InstanceId": "i-0003",
                    "PreviousState": _state("stopped", 80),
                    "CurrentState": _state("shutting-down", 32),
                }
            ]
        },
        {"InstanceIds": ["i-0003"]},
    )

    assert control.stop("i-0001") == {"InstanceId": "i-0001", "PreviousState": "running", "CurrentState": "stopping"}
    assert control.start("i-0002", "Terminator Auto On, Cron: 0 8 * * *")["CurrentState"] == "pending"
    assert control.terminate("i-0003")["CurrentState"] == "shutting-down"


def test_lookup_returns_none_when_target_group_missing(
    elbv2: Tuple[aws_control.TargetGroupControl, Stubber],
) -> None:
    control, stubber = elbv2
    stubber.add_client_error(
        "describe_target_groups",
        service_error_code=aws_control.TARGET_GROUP_NOT_FOUND,
        service_message="One or more target groups not found",
        http_status_code=400,
        expected_params={"Names": ["missing"]},
    )
    assert control.lookup("missing") is None


def test_register_and_deregister_targets(elbv2: Tuple[aws_control.TargetGroupControl, Stubber]) -> None:
    control, stubber = elbv2
    stubber.add_response(
        "describe_target_groups",
        {"TargetGroups": [{"TargetGroupArn": TG_ARN, "TargetGroupName": "web"}]},
        {"Names": ["web"]},
    )
    stubber.add_response(
        "register_targets",
        {},
        {"TargetGroupArn": TG_ARN, "Targets": [{"Id": "i-0001", "Port": 8080}]},
    )
    stubber.add_response(
        "deregister_targets",
        {},
        {"TargetGroupArn": TG_ARN, "Targets": [{"Id": "i-0001", "Port": 8080}]},
    )

    handle = control.lookup("web")
    assert handle is not None and handle["TargetGroupName"] == "web"
    control.register(handle, "i-0001", 8080)
    control.deregister(handle, "i-0001", 8080)
