# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/duostack/provision/aws.py

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

import boto3
from botocore.exceptions import ClientError, EndpointConnectionError

from ..errors import TransientProviderError
from ..graph.models import ResourceKind

log = logging.getLogger("duostack")

IDENTITY_TAG = "duostack:identity"
UBUNTU_AMI_PARAM = "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"

# throttling and eventual-consistency lag; everything else is fatal
TRANSIENT_CODES = {
    "RequestLimitExceeded",
    "Throttling",
    "ThrottlingException",
    "InternalError",
    "Unavailable",
    "ServiceUnavailable",
    "InsufficientInstanceCapacity",
    "InvalidInstanceID.NotFound",
    "InvalidGroup.NotFound",
    "InvalidVolume.NotFound",
    "IncorrectInstanceState",
    "IncorrectState",
    "DependencyViolation",
    "VolumeInUse",
}


def _code(e: ClientError) -> str:
    return e.response.get("Error", {}).get("Code", "Unknown")


@contextmanager
def _translate(action: str):
    try:
        yield
    except ClientError as e:
        if _code(e) in TRANSIENT_CODES:
            raise TransientProviderError(f"{action}: {_code(e)}") from e
        raise
    except EndpointConnectionError as e:
        raise TransientProviderError(f"{action}: {e}") from e


class AwsProvider:
    """
    CloudProvider backed by EC2.

      KeyMaterial   -> imported key pair
      NetworkPolicy -> security group (peer rules bound to the peer's group id)
      Volume        -> EBS volume
      ComputeNode   -> instance, with user data and volume attachments

    Every resource is tagged with its stable identity so a re-run can find it.
    """

    def __init__(
        self,
        *,
        region: str,
        session: Optional[Any] = None,
        ec2: Optional[Any] = None,
        ssm: Optional[Any] = None,
        vpc_id: Optional[str] = None,
        wait: bool = True,
        extra_tags: Optional[List[dict]] = None,
    ):
        session = session or boto3.session.Session(region_name=region)
        self.region = region
        self.ec2 = ec2 or session.client("ec2")
        self._ssm = ssm
        self._session = session
        self._vpc_id = vpc_id
        self.wait = wait
        self.extra_tags = extra_tags or []

    # ------------------ helpers ------------------

    def _tags(self, identity: str, resource_type: str) -> List[dict]:
        tags = [{"Key": IDENTITY_TAG, "Value": identity}, {"Key": "Name", "Value": identity}]
        tags += [t for t in self.extra_tags if t["Key"] not in (IDENTITY_TAG, "Name")]
        return [{"ResourceType": resource_type, "Tags": tags}]

    def _identity_filter(self, identity: str) -> List[dict]:
        return [{"Name": f"tag:{IDENTITY_TAG}", "Values": [identity]}]

    def vpc_id(self) -> str:
        if not self._vpc_id:
            with _translate("describe_vpcs"):
                vpcs = self.ec2.describe_vpcs(Filters=[{"Name": "isDefault", "Values": ["true"]}])["Vpcs"]
            if not vpcs:
                raise RuntimeError(f"No default VPC in {self.region}; set vpc_id explicitly")
            self._vpc_id = vpcs[0]["VpcId"]
        return self._vpc_id

    def default_image(self) -> str:
        ssm = self._ssm or self._session.client("ssm")
        with _translate("get_parameter"):
            return ssm.get_parameter(Name=UBUNTU_AMI_PARAM)["Parameter"]["Value"]

    # ------------------ attribute shapes ------------------

    @staticmethod
    def _instance_attrs(inst: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "id": inst["InstanceId"],
            "instance_id": inst["InstanceId"],
            "private_ip": inst.get("PrivateIpAddress"),
            "public_ip": inst.get("PublicIpAddress"),
            "availability_zone": inst.get("Placement", {}).get("AvailabilityZone"),
            "state": inst.get("State", {}).get("Name"),
        }

    @staticmethod
    def _group_attrs(sg: Mapping[str, Any]) -> Dict[str, Any]:
        return {"id": sg["GroupId"], "group_id": sg["GroupId"], "group_name": sg.get("GroupName")}

    @staticmethod
    def _key_attrs(kp: Mapping[str, Any]) -> Dict[str, Any]:
        return {"id": kp["KeyName"], "key_name": kp["KeyName"], "fingerprint": kp.get("KeyFingerprint")}

    @staticmethod
    def _volume_attrs(vol: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "id": vol["VolumeId"],
            "volume_id": vol["VolumeId"],
            "size_gb": vol.get("Size"),
            "availability_zone": vol.get("AvailabilityZone"),
        }

    # ------------------ CloudProvider ------------------

    def find(self, kind: ResourceKind, identity: str) -> Optional[Dict[str, Any]]:
        flt = self._identity_filter(identity)
        with _translate(f"find {kind.value}"):
            if kind == ResourceKind.COMPUTE_NODE:
                flt.append({"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]})
                res = self.ec2.describe_instances(Filters=flt)["Reservations"]
                insts = [i for r in res for i in r["Instances"]]
                return self._instance_attrs(insts[0]) if insts else None
            if kind == ResourceKind.NETWORK_POLICY:
                sgs = self.ec2.describe_security_groups(Filters=flt)["SecurityGroups"]
                return self._group_attrs(sgs[0]) if sgs else None
            if kind == ResourceKind.KEY_MATERIAL:
                kps = self.ec2.describe_key_pairs(Filters=flt)["KeyPairs"]
                return self._key_attrs(kps[0]) if kps else None
            flt.append({"Name": "status", "Values": ["creating", "available", "in-use"]})
            vols = self.ec2.describe_volumes(Filters=flt)["Volumes"]
            return self._volume_attrs(vols[0]) if vols else None

    def describe(self, kind: ResourceKind, provider_id: str) -> Optional[Dict[str, Any]]:
        try:
            with _translate(f"describe {kind.value}"):
                if kind == ResourceKind.KEY_MATERIAL:
                    return self._key_attrs(self.ec2.describe_key_pairs(KeyNames=[provider_id])["KeyPairs"][0])
                if kind == ResourceKind.NETWORK_POLICY:
                    return self._group_attrs(self.ec2.describe_security_groups(GroupIds=[provider_id])["SecurityGroups"][0])
                if kind == ResourceKind.VOLUME:
                    return self._volume_attrs(self.ec2.describe_volumes(VolumeIds=[provider_id])["Volumes"][0])
                res = self.ec2.describe_instances(InstanceIds=[provider_id])["Reservations"]
                return self._instance_attrs(res[0]["Instances"][0])
        except ClientError as e:
            if _code(e).endswith(".NotFound") or _code(e).endswith(".Malformed"):
                return None
            raise

    def create(self, kind, identity, attributes, idempotency_key):
        if kind == ResourceKind.KEY_MATERIAL:
            return self._create_key(identity, attributes)
        if kind == ResourceKind.NETWORK_POLICY:
            return self._create_group(identity, attributes)
        if kind == ResourceKind.VOLUME:
            return self._create_volume(identity, attributes, idempotency_key)
        return self._create_instance(identity, attributes, idempotency_key)

    def destroy(self, kind, provider_id):
        with _translate(f"destroy {kind.value}"):
            if kind == ResourceKind.COMPUTE_NODE:
                self.ec2.terminate_instances(InstanceIds=[provider_id])
                if self.wait:
                    self.ec2.get_waiter("instance_terminated").wait(InstanceIds=[provider_id])
            elif kind == ResourceKind.NETWORK_POLICY:
                self.ec2.delete_security_group(GroupId=provider_id)
            elif kind == ResourceKind.KEY_MATERIAL:
                self.ec2.delete_key_pair(KeyName=provider_id)
            else:
                self.ec2.delete_volume(VolumeId=provider_id)

    # ------------------ creators ------------------

    def _create_key(self, identity: str, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        name = attributes.get("name") or identity
        try:
            with _translate("import_key_pair"):
                kp = self.ec2.import_key_pair(
                    KeyName=name,
                    PublicKeyMaterial=str(attributes["public_key"]).encode(),
                    TagSpecifications=self._tags(identity, "key-pair"),
                )
        except ClientError as e:
            # key names are unique: a duplicate is our own earlier, partially reported call
            if _code(e) != "InvalidKeyPair.Duplicate":
                raise
            return self.describe(ResourceKind.KEY_MATERIAL, name)
        return self._key_attrs(kp)

    def _create_group(self, identity: str, attributes: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            with _translate("create_security_group"):
                sg = self.ec2.create_security_group(
                    GroupName=identity,
                    Description=attributes.get("description") or f"{identity} managed by duostack",
                    VpcId=self.vpc_id(),
                    TagSpecifications=self._tags(identity, "security-group"),
                )
            group_id = sg["GroupId"]
        except ClientError as e:
            if _code(e) != "InvalidGroup.Duplicate":
                raise
            with _translate("describe_security_groups"):
                group_id = self.ec2.describe_security_groups(
                    Filters=[{"Name": "group-name", "Values": [identity]}, {"Name": "vpc-id", "Values": [self.vpc_id()]}]
                )["SecurityGroups"][0]["GroupId"]

        perms = [self._permission(r) for r in attributes.get("ingress", [])]
        if perms:
            try:
                with _translate("authorize_security_group_ingress"):
                    self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=perms)
            except ClientError as e:
                if _code(e) != "InvalidPermission.Duplicate":
                    raise
        # new groups already carry AWS's default allow-all egress rule
        return {"id": group_id, "group_id": group_id, "group_name": identity}

    @staticmethod
    def _permission(rule: Mapping[str, Any]) -> Dict[str, Any]:
        perm: Dict[str, Any] = {"IpProtocol": rule["protocol"]}
        if rule["protocol"] != "-1":
            perm["FromPort"] = rule["from_port"]
            perm["ToPort"] = rule["to_port"]
        if rule.get("source_group"):
            perm["UserIdGroupPairs"] = [{"GroupId": rule["source_group"], "Description": rule.get("description", "")}]
        else:
            perm["IpRanges"] = [{"CidrIp": rule["cidr"], "Description": rule.get("description", "")}]
        return perm

    def _create_volume(self, identity: str, attributes: Mapping[str, Any], token: str) -> Dict[str, Any]:
        with _translate("create_volume"):
            vol = self.ec2.create_volume(
                AvailabilityZone=attributes["zone"],
                Size=int(attributes["size_gb"]),
                VolumeType=attributes.get("volume_type", "gp3"),
                ClientToken=token,
                TagSpecifications=self._tags(identity, "volume"),
            )
            if self.wait:
                self.ec2.get_waiter("volume_available").wait(VolumeIds=[vol["VolumeId"]])
        return self._volume_attrs(vol)

    def _create_instance(self, identity: str, attributes: Mapping[str, Any], token: str) -> Dict[str, Any]:
        image = attributes.get("image_id") or self.default_image()
        params: Dict[str, Any] = {
            "ImageId": image,
            "InstanceType": attributes["instance_type"],
            "MinCount": 1,
            "MaxCount": 1,
            "ClientToken": token,
            "SecurityGroupIds": list(attributes.get("security_groups", [])),
            "TagSpecifications": self._tags(identity, "instance"),
        }
        if attributes.get("key_name"):
            params["KeyName"] = attributes["key_name"]
        if attributes.get("zone"):
            params["Placement"] = {"AvailabilityZone": attributes["zone"]}
        if attributes.get("user_data"):
            # botocore base64-encodes UserData for RunInstances itself
            params["UserData"] = attributes["user_data"]

        with _translate("run_instances"):
            inst = self.ec2.run_instances(**params)["Instances"][0]
        instance_id = inst["InstanceId"]
        log.debug(f"[{identity}] launched {instance_id}")

        if self.wait:
            with _translate("wait instance_running"):
                self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])

        for att in attributes.get("volumes", []):
            try:
                self.ec2.attach_volume(VolumeId=att["volume_id"], InstanceId=instance_id, Device=att["device"])
            except ClientError as e:
                if _code(e) == "VolumeInUse":
                    continue   # attached by an earlier attempt
                if _code(e) in TRANSIENT_CODES:
                    raise TransientProviderError(f"attach_volume: {_code(e)}") from e
                raise

        with _translate("describe_instances"):
            res = self.ec2.describe_instances(InstanceIds=[instance_id])["Reservations"]
        return self._instance_attrs(res[0]["Instances"][0])
