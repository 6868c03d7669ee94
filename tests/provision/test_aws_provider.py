import base64

import pytest
from botocore.exceptions import ClientError

from duostack.errors import TransientProviderError
from duostack.graph.models import ResourceKind
from duostack.provision.aws import IDENTITY_TAG, AwsProvider

K = ResourceKind


def _err(code, op="Op"):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class FakeEC2:
    def __init__(self):
        self.calls = []
        self.raise_on = {}

    def _hit(self, name, **kw):
        self.calls.append((name, kw))
        err = self.raise_on.get(name)
        if err:
            if isinstance(err, list):
                exc = err.pop(0)
                if not err:
                    del self.raise_on[name]
            else:
                exc = err
            raise exc

    def describe_vpcs(self, **kw):
        self._hit("describe_vpcs", **kw)
        return {"Vpcs": [{"VpcId": "vpc-1"}]}

    def import_key_pair(self, **kw):
        self._hit("import_key_pair", **kw)
        return {"KeyName": kw["KeyName"], "KeyFingerprint": "ff"}

    def describe_key_pairs(self, **kw):
        self._hit("describe_key_pairs", **kw)
        if "KeyNames" in kw and kw["KeyNames"] == ["missing"]:
            raise _err("InvalidKeyPair.NotFound")
        return {"KeyPairs": [{"KeyName": (kw.get("KeyNames") or ["found"])[0], "KeyFingerprint": "ff"}]}

    def create_security_group(self, **kw):
        self._hit("create_security_group", **kw)
        return {"GroupId": "sg-1"}

    def authorize_security_group_ingress(self, **kw):
        self._hit("authorize_security_group_ingress", **kw)

    def run_instances(self, **kw):
        self._hit("run_instances", **kw)
        return {"Instances": [{"InstanceId": "i-1"}]}

    def attach_volume(self, **kw):
        self._hit("attach_volume", **kw)

    def describe_instances(self, **kw):
        self._hit("describe_instances", **kw)
        return {"Reservations": [{"Instances": [{
            "InstanceId": "i-1",
            "PrivateIpAddress": "172.31.0.5",
            "PublicIpAddress": "54.0.0.5",
            "Placement": {"AvailabilityZone": "us-east-1a"},
            "State": {"Name": "running"},
        }]}]}


def _provider(ec2):
    return AwsProvider(region="us-east-1", session=object(), ec2=ec2, wait=False,
                       extra_tags=[{"Key": "project", "Value": "t"}])


def test_peer_rule_becomes_group_pair_and_public_rule_cidr():
    ec2 = FakeEC2()
    attrs = _provider(ec2).create(K.NETWORK_POLICY, "t-db-policy", {
        "ingress": [
            {"protocol": "tcp", "from_port": 3306, "to_port": 3306, "source_group": "sg-app", "description": "app"},
            {"protocol": "tcp", "from_port": 22, "to_port": 22, "cidr": "203.0.113.7/32"},
        ],
    }, "tok")
    assert attrs["group_id"] == "sg-1"

    create = dict(ec2.calls)["create_security_group"]
    assert create["VpcId"] == "vpc-1"
    tags = create["TagSpecifications"][0]["Tags"]
    assert {"Key": IDENTITY_TAG, "Value": "t-db-policy"} in tags
    assert {"Key": "project", "Value": "t"} in tags

    perms = dict(ec2.calls)["authorize_security_group_ingress"]["IpPermissions"]
    assert perms[0]["UserIdGroupPairs"][0]["GroupId"] == "sg-app"
    assert "IpRanges" not in perms[0]
    assert perms[1]["IpRanges"][0]["CidrIp"] == "203.0.113.7/32"


def test_instance_uses_client_token_and_plain_user_data():
    ec2 = FakeEC2()
    attrs = _provider(ec2).create(K.COMPUTE_NODE, "t-db-node", {
        "image_id": "ami-1",
        "instance_type": "t3.small",
        "key_name": "t-key",
        "security_groups": ["sg-1"],
        "user_data": "#!/bin/bash\necho hi\n",
        "volumes": [{"volume_id": "vol-1", "device": "/dev/sdf"}],
    }, "token-123")

    run = dict(ec2.calls)["run_instances"]
    assert run["ClientToken"] == "token-123"
    assert run["UserData"] == "#!/bin/bash\necho hi\n"
    assert dict(ec2.calls)["attach_volume"]["VolumeId"] == "vol-1"
    assert attrs["private_ip"] == "172.31.0.5"
    assert attrs["public_ip"] == "54.0.0.5"


def test_volume_already_attached_is_not_an_error():
    ec2 = FakeEC2()
    ec2.raise_on["attach_volume"] = _err("VolumeInUse")
    attrs = _provider(ec2).create(K.COMPUTE_NODE, "t-db-node", {
        "image_id": "ami-1", "instance_type": "t3.small",
        "volumes": [{"volume_id": "vol-1", "device": "/dev/sdf"}],
    }, "tok")
    assert attrs["instance_id"] == "i-1"


def test_throttling_is_transient_and_other_errors_propagate():
    ec2 = FakeEC2()
    ec2.raise_on["run_instances"] = _err("RequestLimitExceeded")
    p = _provider(ec2)
    with pytest.raises(TransientProviderError):
        p.create(K.COMPUTE_NODE, "t-app", {"image_id": "ami-1", "instance_type": "t3.small"}, "tok")

    ec2.raise_on["run_instances"] = _err("InvalidParameterValue")
    with pytest.raises(ClientError):
        p.create(K.COMPUTE_NODE, "t-app", {"image_id": "ami-1", "instance_type": "t3.small"}, "tok")


def test_duplicate_key_falls_back_to_describe():
    ec2 = FakeEC2()
    ec2.raise_on["import_key_pair"] = _err("InvalidKeyPair.Duplicate")
    attrs = _provider(ec2).create(K.KEY_MATERIAL, "t-ssh-key", {"name": "t-key", "public_key": "ssh-ed25519 AAA"}, "tok")
    assert attrs["key_name"] == "t-key"


def test_describe_missing_returns_none():
    assert _provider(FakeEC2()).describe(K.KEY_MATERIAL, "missing") is None


def test_find_filters_on_identity_tag():
    ec2 = FakeEC2()
    attrs = _provider(ec2).find(K.KEY_MATERIAL, "t-ssh-key")
    assert attrs["key_name"] == "found"
    flt = dict(ec2.calls)["describe_key_pairs"]["Filters"]
    assert flt == [{"Name": f"tag:{IDENTITY_TAG}", "Values": ["t-ssh-key"]}]


class _Sent(Exception):
    pass


def test_user_data_reaches_ec2_encoded_exactly_once():
    import boto3

    client = boto3.client(
        "ec2", region_name="us-east-1", aws_access_key_id="testing", aws_secret_access_key="testing",
    )
    sent = {}

    def capture(params, **kwargs):
        sent.update(params["body"])
        raise _Sent()

    client.meta.events.register("before-call.ec2.RunInstances", capture)
    script = "#!/bin/bash\necho hi\n"
    p = AwsProvider(region="us-east-1", session=object(), ec2=client, wait=False)
    with pytest.raises(_Sent):
        p.create(K.COMPUTE_NODE, "t-app", {"image_id": "ami-1", "instance_type": "t3.small", "user_data": script}, "tok")

    assert base64.b64decode(sent["UserData"]).decode() == script
