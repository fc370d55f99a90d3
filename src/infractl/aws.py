"""AWS implementation of the provider gateway (boto3).

Each resource kind maps onto one AWS service:

    instance          -> EC2 (identity: Name tag)
    object_store      -> S3 (identity: bucket name)
    managed_database  -> RDS (identity: DB instance identifier)
    load_balancer     -> ELBv2 (identity: load balancer name)
    scaling_group     -> Auto Scaling (identity: group name)
    identity_role     -> IAM (identity: role name)

botocore errors are translated at this boundary:

    not-found codes on describe      -> ResourceNotFoundError
    client-side ParamValidationError -> DesiredStateError
    anything else                    -> ProviderError (with the AWS code)
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any
from urllib.parse import unquote

import boto3
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from .gateway import DesiredStateError, ProviderError, ProviderGateway, ResourceNotFoundError
from .models import (
    BaseResourceSpec,
    DatabaseSpec,
    IdentityRoleSpec,
    InstanceSpec,
    ListenerSpec,
    LoadBalancerSpec,
    ObjectStoreSpec,
    ResourceKind,
    ScalingGroupSpec,
    TargetGroupSpec,
)
from .state import ChangeSet, ObservedState

logger = logging.getLogger(__name__)

# AWS error codes that mean "no such resource"
NOT_FOUND_CODES: frozenset[str] = frozenset(
    {
        "404",
        "NotFound",
        "NoSuchBucket",
        "InvalidInstanceID.NotFound",
        "DBInstanceNotFound",
        "DBInstanceNotFoundFault",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "NoSuchEntity",
    }
)

# EC2 states counted as live
LIVE_INSTANCE_STATES: tuple[str, ...] = ("pending", "running", "stopping", "stopped")

# Region where S3 rejects an explicit LocationConstraint
S3_DEFAULT_REGION = "us-east-1"

ALL_USERS_URI = "http://acs.amazonaws.com/groups/global/AllUsers"
AUTHENTICATED_USERS_URI = "http://acs.amazonaws.com/groups/global/AuthenticatedUsers"


@contextmanager
def _provider_call(
    operation: str,
    kind: ResourceKind | None = None,
    name: str = "",
) -> Iterator[None]:
    """Translate botocore errors raised inside the block.

    Passing ``kind`` enables mapping of not-found codes to
    ResourceNotFoundError; without it every ClientError is a ProviderError.
    """
    try:
        yield
    except ClientError as e:
        error = e.response.get("Error", {})
        code = error.get("Code")
        if kind is not None and code in NOT_FOUND_CODES:
            raise ResourceNotFoundError(kind, name) from e
        raise ProviderError(operation, error.get("Message") or str(e), code) from e
    except ParamValidationError as e:
        # Rejected by botocore before any request was sent
        raise DesiredStateError(f"{operation}: {e}") from e
    except BotoCoreError as e:
        raise ProviderError(operation, str(e)) from e


def _tag_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def _tag_dict(tag_list: Sequence[Mapping[str, Any]] | None) -> dict[str, str]:
    """Convert AWS ``[{"Key": k, "Value": v}]`` tags to a plain dict."""
    if not tag_list:
        return {}
    return {t["Key"]: t.get("Value", "") for t in tag_list if "Key" in t}


def _decode_policy(document: Any) -> dict[str, Any]:
    """IAM policy documents may arrive URL-encoded JSON or already decoded."""
    if isinstance(document, str):
        return json.loads(unquote(document))
    return dict(document)


def _acl_from_grants(grants: Sequence[Mapping[str, Any]]) -> str:
    """Derive the canned ACL that produces a grant list."""
    permissions: dict[str, set[str]] = {}
    for grant in grants:
        uri = grant.get("Grantee", {}).get("URI")
        if uri:
            permissions.setdefault(uri, set()).add(grant.get("Permission", ""))

    public = permissions.get(ALL_USERS_URI, set())
    if {"READ", "WRITE"} <= public:
        return "public-read-write"
    if "READ" in public:
        return "public-read"
    if "READ" in permissions.get(AUTHENTICATED_USERS_URI, set()):
        return "authenticated-read"
    return "private"


class AwsGateway(ProviderGateway):
    """Provider gateway backed by boto3 clients for one region."""

    def __init__(self, session: boto3.Session, region: str) -> None:
        """Initialize gateway.

        Args:
            session: Configured boto3 session.
            region: Region every client is bound to.
        """
        self._session = session
        self._region = region
        self._clients: dict[str, Any] = {}
        # boto3 sessions are not thread-safe when creating clients
        self._clients_lock = threading.Lock()

    @classmethod
    def for_region(cls, region: str) -> AwsGateway:
        """Build a gateway from the default credential chain."""
        return cls(boto3.Session(region_name=region), region)

    def _client(self, service: str) -> Any:
        with self._clients_lock:
            client = self._clients.get(service)
            if client is None:
                client = self._session.client(service, region_name=self._region)
                self._clients[service] = client
            return client

    # =========================================================================
    # Gateway verbs
    # =========================================================================

    def describe(self, spec: BaseResourceSpec) -> list[ObservedState]:
        match spec:
            case InstanceSpec():
                return self._describe_instances(spec)
            case ObjectStoreSpec():
                return [self._describe_bucket(spec)]
            case DatabaseSpec():
                return [self._describe_database(spec)]
            case LoadBalancerSpec():
                return [self._describe_load_balancer(spec)]
            case ScalingGroupSpec():
                return [self._describe_scaling_group(spec)]
            case IdentityRoleSpec():
                return [self._describe_role(spec)]
        raise DesiredStateError(f"Unsupported resource kind: {spec.kind.value}")

    def create(self, spec: BaseResourceSpec) -> str:
        logger.info(
            "Creating resource",
            extra={"kind": spec.kind.value, "resource_name": spec.name, "region": self._region},
        )
        match spec:
            case InstanceSpec():
                return self._create_instance(spec)
            case ObjectStoreSpec():
                return self._create_bucket(spec)
            case DatabaseSpec():
                return self._create_database(spec)
            case LoadBalancerSpec():
                return self._create_load_balancer(spec)
            case ScalingGroupSpec():
                return self._create_scaling_group(spec)
            case IdentityRoleSpec():
                return self._create_role(spec)
        raise DesiredStateError(f"Unsupported resource kind: {spec.kind.value}")

    def update(
        self,
        spec: BaseResourceSpec,
        observed: ObservedState,
        change_set: ChangeSet,
    ) -> None:
        touched = change_set.touched_fields()
        logger.info(
            "Updating resource",
            extra={
                "kind": spec.kind.value,
                "resource_name": spec.name,
                "resource_id": observed.resource_id,
                "fields": touched,
            },
        )
        match spec:
            case InstanceSpec():
                self._update_instance(spec, observed, touched)
            case ObjectStoreSpec():
                self._update_bucket(spec, observed, touched)
            case DatabaseSpec():
                self._update_database(spec, observed, touched)
            case LoadBalancerSpec():
                self._update_load_balancer(spec, observed, touched)
            case ScalingGroupSpec():
                self._update_scaling_group(spec, observed, touched)
            case IdentityRoleSpec():
                self._update_role(spec, change_set)
            case _:
                raise DesiredStateError(f"Unsupported resource kind: {spec.kind.value}")

    def terminate(self, kind: ResourceKind, resource_ids: Sequence[str]) -> None:
        if not resource_ids:
            return
        logger.info(
            "Terminating resources",
            extra={"kind": kind.value, "resource_ids": list(resource_ids)},
        )
        match kind:
            case ResourceKind.INSTANCE:
                with _provider_call("TerminateInstances"):
                    self._client("ec2").terminate_instances(InstanceIds=list(resource_ids))
            case ResourceKind.OBJECT_STORE:
                for bucket in resource_ids:
                    with _provider_call("DeleteBucket"):
                        self._client("s3").delete_bucket(Bucket=bucket)
            case ResourceKind.MANAGED_DATABASE:
                for identifier in resource_ids:
                    with _provider_call("DeleteDBInstance"):
                        self._client("rds").delete_db_instance(
                            DBInstanceIdentifier=identifier.rsplit(":", 1)[-1],
                            SkipFinalSnapshot=True,
                        )
            case ResourceKind.LOAD_BALANCER:
                for arn in resource_ids:
                    with _provider_call("DeleteLoadBalancer"):
                        self._client("elbv2").delete_load_balancer(LoadBalancerArn=arn)
            case ResourceKind.SCALING_GROUP:
                for group in resource_ids:
                    with _provider_call("DeleteAutoScalingGroup"):
                        self._client("autoscaling").delete_auto_scaling_group(
                            AutoScalingGroupName=group, ForceDelete=True
                        )
            case ResourceKind.IDENTITY_ROLE:
                for arn in resource_ids:
                    self._delete_role(arn.rsplit("/", 1)[-1])

    # =========================================================================
    # EC2
    # =========================================================================

    def _describe_instances(self, spec: InstanceSpec) -> list[ObservedState]:
        ec2 = self._client("ec2")
        observed: list[ObservedState] = []
        with _provider_call("DescribeInstances", spec.kind, spec.name):
            paginator = ec2.get_paginator("describe_instances")
            pages = paginator.paginate(
                Filters=[
                    {"Name": "tag:Name", "Values": [spec.name]},
                    {"Name": "instance-state-name", "Values": list(LIVE_INSTANCE_STATES)},
                ]
            )
            for page in pages:
                for reservation in page.get("Reservations", []):
                    for instance in reservation.get("Instances", []):
                        observed.append(self._observe_instance(spec.name, instance))
        return observed

    def _observe_instance(self, name: str, instance: Mapping[str, Any]) -> ObservedState:
        return ObservedState(
            kind=ResourceKind.INSTANCE,
            name=name,
            resource_id=instance["InstanceId"],
            fields={
                "instance_type": instance.get("InstanceType"),
                "image_id": instance.get("ImageId"),
                "key_name": instance.get("KeyName"),
                "subnet_id": instance.get("SubnetId"),
                "security_group_ids": [g["GroupId"] for g in instance.get("SecurityGroups", [])],
                "monitoring": instance.get("Monitoring", {}).get("State") == "enabled",
                "tags": _tag_dict(instance.get("Tags")),
            },
            lifecycle_state=instance.get("State", {}).get("Name"),
        )

    def _create_instance(self, spec: InstanceSpec) -> str:
        params: dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "Monitoring": {"Enabled": spec.monitoring},
            "NetworkInterfaces": [
                {
                    "DeviceIndex": 0,
                    "SubnetId": spec.subnet_id,
                    "Groups": list(spec.security_group_ids),
                    "AssociatePublicIpAddress": True,
                }
            ],
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": _tag_list({**spec.tags, "Name": spec.name}),
                }
            ],
        }
        if spec.key_name:
            params["KeyName"] = spec.key_name

        with _provider_call("RunInstances"):
            response = self._client("ec2").run_instances(**params)
        return response["Instances"][0]["InstanceId"]

    def _update_instance(
        self, spec: InstanceSpec, observed: ObservedState, touched: list[str]
    ) -> None:
        ec2 = self._client("ec2")
        instance_id = observed.resource_id

        if "instance_type" in touched:
            with _provider_call("ModifyInstanceAttribute"):
                ec2.modify_instance_attribute(
                    InstanceId=instance_id, InstanceType={"Value": spec.instance_type}
                )
        if "security_group_ids" in touched:
            with _provider_call("ModifyInstanceAttribute"):
                ec2.modify_instance_attribute(
                    InstanceId=instance_id, Groups=list(spec.security_group_ids)
                )
        if "monitoring" in touched:
            if spec.monitoring:
                with _provider_call("MonitorInstances"):
                    ec2.monitor_instances(InstanceIds=[instance_id])
            else:
                with _provider_call("UnmonitorInstances"):
                    ec2.unmonitor_instances(InstanceIds=[instance_id])
        if "tags" in touched:
            with _provider_call("CreateTags"):
                ec2.create_tags(Resources=[instance_id], Tags=_tag_list(spec.tags))

    # =========================================================================
    # S3
    # =========================================================================

    def _describe_bucket(self, spec: ObjectStoreSpec) -> ObservedState:
        s3 = self._client("s3")
        with _provider_call("HeadBucket", spec.kind, spec.name):
            s3.head_bucket(Bucket=spec.name)
        with _provider_call("GetBucketAcl"):
            grants = s3.get_bucket_acl(Bucket=spec.name).get("Grants", [])
        return ObservedState(
            kind=spec.kind,
            name=spec.name,
            resource_id=spec.name,
            fields={"acl": _acl_from_grants(grants), "tags": self._bucket_tags(spec.name)},
        )

    def _bucket_tags(self, bucket: str) -> dict[str, str]:
        try:
            response = self._client("s3").get_bucket_tagging(Bucket=bucket)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchTagSet":
                return {}
            raise ProviderError(
                "GetBucketTagging", e.response.get("Error", {}).get("Message") or str(e)
            ) from e
        return _tag_dict(response.get("TagSet"))

    def _create_bucket(self, spec: ObjectStoreSpec) -> str:
        s3 = self._client("s3")
        params: dict[str, Any] = {"Bucket": spec.name}
        if self._region != S3_DEFAULT_REGION:
            params["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        if spec.acl and spec.acl != "private":
            # Non-private canned ACLs need ACLs enabled on the bucket
            params["ObjectOwnership"] = "ObjectWriter"

        with _provider_call("CreateBucket"):
            s3.create_bucket(**params)
        if spec.acl:
            with _provider_call("PutBucketAcl"):
                s3.put_bucket_acl(Bucket=spec.name, ACL=spec.acl)
        if spec.tags:
            with _provider_call("PutBucketTagging"):
                s3.put_bucket_tagging(
                    Bucket=spec.name, Tagging={"TagSet": _tag_list(spec.tags)}
                )
        return spec.name

    def _update_bucket(
        self, spec: ObjectStoreSpec, observed: ObservedState, touched: list[str]
    ) -> None:
        s3 = self._client("s3")
        if "acl" in touched:
            with _provider_call("PutBucketAcl"):
                s3.put_bucket_acl(Bucket=spec.name, ACL=spec.acl)
        if "tags" in touched:
            # PutBucketTagging replaces the whole set
            merged = {**observed.fields.get("tags", {}), **spec.tags}
            with _provider_call("PutBucketTagging"):
                s3.put_bucket_tagging(Bucket=spec.name, Tagging={"TagSet": _tag_list(merged)})

    # =========================================================================
    # RDS
    # =========================================================================

    def _describe_database(self, spec: DatabaseSpec) -> ObservedState:
        with _provider_call("DescribeDBInstances", spec.kind, spec.name):
            response = self._client("rds").describe_db_instances(DBInstanceIdentifier=spec.name)
        instances = response.get("DBInstances", [])
        if not instances:
            raise ResourceNotFoundError(spec.kind, spec.name)
        db = instances[0]
        return ObservedState(
            kind=spec.kind,
            name=spec.name,
            resource_id=db["DBInstanceArn"],
            fields={
                "engine": db.get("Engine"),
                "engine_version": db.get("EngineVersion"),
                "instance_class": db.get("DBInstanceClass"),
                "allocated_storage": db.get("AllocatedStorage"),
                "username": db.get("MasterUsername"),
                "tags": _tag_dict(db.get("TagList")),
            },
            lifecycle_state=db.get("DBInstanceStatus"),
        )

    def _create_database(self, spec: DatabaseSpec) -> str:
        # SAFETY: ensure_creatable has checked the password is present
        assert spec.password is not None
        params: dict[str, Any] = {
            "DBInstanceIdentifier": spec.name,
            "Engine": spec.engine,
            "DBInstanceClass": spec.instance_class,
            "AllocatedStorage": spec.allocated_storage,
            "MasterUsername": spec.username,
            "MasterUserPassword": spec.password.get_secret_value(),
            "Tags": _tag_list(spec.tags),
        }
        if spec.engine_version:
            params["EngineVersion"] = spec.engine_version

        with _provider_call("CreateDBInstance"):
            response = self._client("rds").create_db_instance(**params)
        return response["DBInstance"]["DBInstanceArn"]

    def _update_database(
        self, spec: DatabaseSpec, observed: ObservedState, touched: list[str]
    ) -> None:
        rds = self._client("rds")
        params: dict[str, Any] = {}
        if "engine_version" in touched:
            params["EngineVersion"] = spec.engine_version
            params["AllowMajorVersionUpgrade"] = True
        if "instance_class" in touched:
            params["DBInstanceClass"] = spec.instance_class
        if "allocated_storage" in touched:
            params["AllocatedStorage"] = spec.allocated_storage

        if params:
            with _provider_call("ModifyDBInstance"):
                rds.modify_db_instance(
                    DBInstanceIdentifier=spec.name, ApplyImmediately=True, **params
                )
        if "tags" in touched:
            with _provider_call("AddTagsToResource"):
                rds.add_tags_to_resource(
                    ResourceName=observed.resource_id, Tags=_tag_list(spec.tags)
                )

    # =========================================================================
    # ELBv2
    # =========================================================================

    def _describe_load_balancer(self, spec: LoadBalancerSpec) -> ObservedState:
        elbv2 = self._client("elbv2")
        with _provider_call("DescribeLoadBalancers", spec.kind, spec.name):
            response = elbv2.describe_load_balancers(Names=[spec.name])
        balancers = response.get("LoadBalancers", [])
        if not balancers:
            raise ResourceNotFoundError(spec.kind, spec.name)
        lb = balancers[0]
        arn = lb["LoadBalancerArn"]

        # Attached groups are only those a listener forwards to; declared
        # groups without a listener are found by name
        with _provider_call("DescribeTargetGroups"):
            attached = elbv2.describe_target_groups(LoadBalancerArn=arn).get("TargetGroups", [])
        by_arn = {tg["TargetGroupArn"]: tg for tg in attached}
        for tg in self._find_target_groups([tg.name for tg in spec.target_groups]):
            by_arn.setdefault(tg["TargetGroupArn"], tg)
        target_groups = list(by_arn.values())
        names_by_arn = {tg_arn: tg["TargetGroupName"] for tg_arn, tg in by_arn.items()}

        with _provider_call("DescribeListeners"):
            listeners = elbv2.describe_listeners(LoadBalancerArn=arn).get("Listeners", [])
        with _provider_call("DescribeTags"):
            descriptions = elbv2.describe_tags(ResourceArns=[arn]).get("TagDescriptions", [])
        tags = _tag_dict(descriptions[0].get("Tags")) if descriptions else {}

        return ObservedState(
            kind=spec.kind,
            name=spec.name,
            resource_id=arn,
            fields={
                "scheme": lb.get("Scheme"),
                "subnets": [az["SubnetId"] for az in lb.get("AvailabilityZones", [])],
                "security_groups": list(lb.get("SecurityGroups", [])),
                "listeners": [
                    self._observe_listener(listener, names_by_arn)
                    for listener in sorted(listeners, key=lambda item: item["Port"])
                ],
                "target_groups": [
                    self._observe_target_group(tg)
                    for tg in sorted(target_groups, key=lambda item: item["TargetGroupName"])
                ],
                "tags": tags,
            },
            lifecycle_state=lb.get("State", {}).get("Code"),
        )

    @staticmethod
    def _observe_listener(
        listener: Mapping[str, Any], names_by_arn: Mapping[str, str]
    ) -> dict[str, Any]:
        actions = listener.get("DefaultActions", [])
        action = actions[0] if actions else {}
        return {
            "protocol": listener.get("Protocol"),
            "port": listener.get("Port"),
            "action_type": action.get("Type"),
            "target_group": names_by_arn.get(action.get("TargetGroupArn", "")),
        }

    @staticmethod
    def _observe_target_group(tg: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "name": tg["TargetGroupName"],
            "protocol": tg.get("Protocol"),
            "port": tg.get("Port"),
            "health_check": {
                "path": tg.get("HealthCheckPath"),
                "port": tg.get("HealthCheckPort"),
                "interval": tg.get("HealthCheckIntervalSeconds"),
                "timeout": tg.get("HealthCheckTimeoutSeconds"),
                "healthy_threshold": tg.get("HealthyThresholdCount"),
                "unhealthy_threshold": tg.get("UnhealthyThresholdCount"),
            },
        }

    @staticmethod
    def _health_check_params(tg: TargetGroupSpec) -> dict[str, Any]:
        check = tg.health_check()
        return {
            "HealthCheckPath": check["path"],
            "HealthCheckPort": check["port"],
            "HealthCheckIntervalSeconds": check["interval"],
            "HealthCheckTimeoutSeconds": check["timeout"],
            "HealthyThresholdCount": check["healthy_threshold"],
            "UnhealthyThresholdCount": check["unhealthy_threshold"],
        }

    def _create_target_group(self, spec: LoadBalancerSpec, tg: TargetGroupSpec) -> str:
        with _provider_call("CreateTargetGroup"):
            response = self._client("elbv2").create_target_group(
                Name=tg.name,
                Protocol=tg.protocol,
                Port=tg.port,
                VpcId=spec.vpc_id,
                TargetType="instance",
                **self._health_check_params(tg),
            )
        return response["TargetGroups"][0]["TargetGroupArn"]

    def _find_target_groups(self, names: Sequence[str]) -> list[dict[str, Any]]:
        """Describe existing target groups by name; missing names are left out."""
        found: list[dict[str, Any]] = []
        elbv2 = self._client("elbv2")
        for name in names:
            try:
                with _provider_call("DescribeTargetGroups", ResourceKind.LOAD_BALANCER, name):
                    response = elbv2.describe_target_groups(Names=[name])
            except ResourceNotFoundError:
                continue
            found.extend(response.get("TargetGroups", []))
        return found

    def _target_group_arns(self, names: Sequence[str]) -> dict[str, str]:
        return {
            tg["TargetGroupName"]: tg["TargetGroupArn"] for tg in self._find_target_groups(names)
        }

    @staticmethod
    def _listener_actions(
        listener: ListenerSpec, arns: Mapping[str, str]
    ) -> list[dict[str, Any]]:
        # The model only admits forward actions to declared target groups
        action = listener.default_action
        return [{"Type": action.type, "TargetGroupArn": arns[action.target_group]}]

    def _create_load_balancer(self, spec: LoadBalancerSpec) -> str:
        elbv2 = self._client("elbv2")

        # Target groups first, listeners reference them by ARN
        arns = {tg.name: self._create_target_group(spec, tg) for tg in spec.target_groups}

        params: dict[str, Any] = {
            "Name": spec.name,
            "Subnets": list(spec.subnets),
            "Type": "application",
        }
        if spec.security_groups:
            params["SecurityGroups"] = list(spec.security_groups)
        if spec.scheme:
            params["Scheme"] = spec.scheme
        if spec.tags:
            params["Tags"] = _tag_list(spec.tags)

        with _provider_call("CreateLoadBalancer"):
            response = elbv2.create_load_balancer(**params)
        lb_arn = response["LoadBalancers"][0]["LoadBalancerArn"]

        for listener in spec.listeners:
            with _provider_call("CreateListener"):
                elbv2.create_listener(
                    LoadBalancerArn=lb_arn,
                    Protocol=listener.protocol,
                    Port=listener.port,
                    DefaultActions=self._listener_actions(listener, arns),
                )
        return lb_arn

    def _update_load_balancer(
        self, spec: LoadBalancerSpec, observed: ObservedState, touched: list[str]
    ) -> None:
        elbv2 = self._client("elbv2")
        lb_arn = observed.resource_id

        if "subnets" in touched:
            with _provider_call("SetSubnets"):
                elbv2.set_subnets(LoadBalancerArn=lb_arn, Subnets=list(spec.subnets))
        if "security_groups" in touched:
            with _provider_call("SetSecurityGroups"):
                elbv2.set_security_groups(
                    LoadBalancerArn=lb_arn, SecurityGroups=list(spec.security_groups)
                )

        arns = self._target_group_arns([tg.name for tg in spec.target_groups])
        if "target_groups" in touched:
            for tg in spec.target_groups:
                if tg.name in arns:
                    with _provider_call("ModifyTargetGroup"):
                        elbv2.modify_target_group(
                            TargetGroupArn=arns[tg.name], **self._health_check_params(tg)
                        )
                else:
                    arns[tg.name] = self._create_target_group(spec, tg)

        if "listeners" in touched:
            with _provider_call("DescribeListeners"):
                current = elbv2.describe_listeners(LoadBalancerArn=lb_arn).get("Listeners", [])
            by_port = {listener["Port"]: listener["ListenerArn"] for listener in current}
            declared_ports = {listener.port for listener in spec.listeners}

            for listener in spec.listeners:
                actions = self._listener_actions(listener, arns)
                if listener.port in by_port:
                    with _provider_call("ModifyListener"):
                        elbv2.modify_listener(
                            ListenerArn=by_port[listener.port],
                            Protocol=listener.protocol,
                            Port=listener.port,
                            DefaultActions=actions,
                        )
                else:
                    with _provider_call("CreateListener"):
                        elbv2.create_listener(
                            LoadBalancerArn=lb_arn,
                            Protocol=listener.protocol,
                            Port=listener.port,
                            DefaultActions=actions,
                        )
            for port, listener_arn in by_port.items():
                if port not in declared_ports:
                    with _provider_call("DeleteListener"):
                        elbv2.delete_listener(ListenerArn=listener_arn)

        if "tags" in touched:
            with _provider_call("AddTags"):
                elbv2.add_tags(ResourceArns=[lb_arn], Tags=_tag_list(spec.tags))

    # =========================================================================
    # Auto Scaling
    # =========================================================================

    def _describe_scaling_group(self, spec: ScalingGroupSpec) -> ObservedState:
        with _provider_call("DescribeAutoScalingGroups", spec.kind, spec.name):
            response = self._client("autoscaling").describe_auto_scaling_groups(
                AutoScalingGroupNames=[spec.name]
            )
        groups = response.get("AutoScalingGroups", [])
        if not groups:
            raise ResourceNotFoundError(spec.kind, spec.name)
        group = groups[0]

        template = group.get("LaunchTemplate")
        zones = group.get("VPCZoneIdentifier") or ""
        return ObservedState(
            kind=spec.kind,
            name=spec.name,
            resource_id=group["AutoScalingGroupName"],
            fields={
                "min_size": group.get("MinSize"),
                "max_size": group.get("MaxSize"),
                "desired_capacity": group.get("DesiredCapacity"),
                "launch_template": (
                    {"name": template.get("LaunchTemplateName"), "version": template.get("Version")}
                    if template
                    else None
                ),
                "zone_identifiers": [zone for zone in zones.split(",") if zone],
                "target_group_arns": list(group.get("TargetGroupARNs", [])),
                "tags": _tag_dict(group.get("Tags")),
            },
            lifecycle_state=group.get("Status"),
        )

    def _scaling_group_tags(self, spec: ScalingGroupSpec) -> list[dict[str, Any]]:
        return [
            {
                "ResourceId": spec.name,
                "ResourceType": "auto-scaling-group",
                "Key": key,
                "Value": value,
                "PropagateAtLaunch": True,
            }
            for key, value in spec.tags.items()
        ]

    def _create_scaling_group(self, spec: ScalingGroupSpec) -> str:
        # SAFETY: ensure_creatable has checked the launch template is present
        assert spec.launch_template is not None
        params: dict[str, Any] = {
            "AutoScalingGroupName": spec.name,
            "MinSize": spec.min_size,
            "MaxSize": spec.max_size,
            "LaunchTemplate": {
                "LaunchTemplateName": spec.launch_template.name,
                "Version": spec.launch_template.version,
            },
            "VPCZoneIdentifier": ",".join(spec.zone_identifiers),
        }
        if spec.desired_capacity is not None:
            params["DesiredCapacity"] = spec.desired_capacity
        if spec.target_group_arns:
            params["TargetGroupARNs"] = list(spec.target_group_arns)
        if spec.tags:
            params["Tags"] = self._scaling_group_tags(spec)

        with _provider_call("CreateAutoScalingGroup"):
            self._client("autoscaling").create_auto_scaling_group(**params)
        return spec.name

    def _update_scaling_group(
        self, spec: ScalingGroupSpec, observed: ObservedState, touched: list[str]
    ) -> None:
        autoscaling = self._client("autoscaling")
        params: dict[str, Any] = {}
        if "min_size" in touched:
            params["MinSize"] = spec.min_size
        if "max_size" in touched:
            params["MaxSize"] = spec.max_size
        if "desired_capacity" in touched:
            params["DesiredCapacity"] = spec.desired_capacity
        if "launch_template" in touched and spec.launch_template is not None:
            params["LaunchTemplate"] = {
                "LaunchTemplateName": spec.launch_template.name,
                "Version": spec.launch_template.version,
            }
        if "zone_identifiers" in touched:
            params["VPCZoneIdentifier"] = ",".join(spec.zone_identifiers)

        if params:
            with _provider_call("UpdateAutoScalingGroup"):
                autoscaling.update_auto_scaling_group(AutoScalingGroupName=spec.name, **params)

        if "target_group_arns" in touched:
            current = set(observed.fields.get("target_group_arns") or [])
            desired = set(spec.target_group_arns)
            if desired - current:
                with _provider_call("AttachLoadBalancerTargetGroups"):
                    autoscaling.attach_load_balancer_target_groups(
                        AutoScalingGroupName=spec.name,
                        TargetGroupARNs=sorted(desired - current),
                    )
            if current - desired:
                with _provider_call("DetachLoadBalancerTargetGroups"):
                    autoscaling.detach_load_balancer_target_groups(
                        AutoScalingGroupName=spec.name,
                        TargetGroupARNs=sorted(current - desired),
                    )

        if "tags" in touched:
            with _provider_call("CreateOrUpdateTags"):
                autoscaling.create_or_update_tags(Tags=self._scaling_group_tags(spec))

    # =========================================================================
    # IAM
    # =========================================================================

    def _describe_role(self, spec: IdentityRoleSpec) -> ObservedState:
        iam = self._client("iam")
        with _provider_call("GetRole", spec.kind, spec.name):
            role = iam.get_role(RoleName=spec.name)["Role"]

        policies: dict[str, Any] = {}
        with _provider_call("ListRolePolicies"):
            paginator = iam.get_paginator("list_role_policies")
            for page in paginator.paginate(RoleName=spec.name):
                for policy_name in page.get("PolicyNames", []):
                    response = iam.get_role_policy(RoleName=spec.name, PolicyName=policy_name)
                    policies[policy_name] = _decode_policy(response["PolicyDocument"])

        return ObservedState(
            kind=spec.kind,
            name=spec.name,
            resource_id=role["Arn"],
            fields={
                "trust_policy": _decode_policy(role["AssumeRolePolicyDocument"]),
                "inline_policies": policies,
                "tags": _tag_dict(role.get("Tags")),
            },
        )

    def _put_role_policy(
        self, role_name: str, policy_name: str, document: Mapping[str, Any]
    ) -> None:
        with _provider_call("PutRolePolicy"):
            self._client("iam").put_role_policy(
                RoleName=role_name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(document),
            )

    def _create_role(self, spec: IdentityRoleSpec) -> str:
        params: dict[str, Any] = {
            "RoleName": spec.name,
            "AssumeRolePolicyDocument": json.dumps(spec.trust_policy),
        }
        if spec.tags:
            params["Tags"] = _tag_list(spec.tags)

        with _provider_call("CreateRole"):
            response = self._client("iam").create_role(**params)
        for policy in spec.inline_policies:
            self._put_role_policy(spec.name, policy.name, policy.document)
        return response["Role"]["Arn"]

    def _update_role(self, spec: IdentityRoleSpec, change_set: ChangeSet) -> None:
        iam = self._client("iam")
        documents = spec.desired_fields()["inline_policies"]

        for change in change_set:
            match change.top_level_field:
                case "trust_policy":
                    with _provider_call("UpdateAssumeRolePolicy"):
                        iam.update_assume_role_policy(
                            RoleName=spec.name, PolicyDocument=json.dumps(spec.trust_policy)
                        )
                case "inline_policies":
                    policy_name = change.field.split(".", 1)[1]
                    self._put_role_policy(spec.name, policy_name, documents[policy_name])

        if "tags" in change_set.touched_fields():
            with _provider_call("TagRole"):
                iam.tag_role(RoleName=spec.name, Tags=_tag_list(spec.tags))

    def _delete_role(self, role_name: str) -> None:
        iam = self._client("iam")
        with _provider_call("ListRolePolicies"):
            policy_names = iam.list_role_policies(RoleName=role_name).get("PolicyNames", [])
        for policy_name in policy_names:
            with _provider_call("DeleteRolePolicy"):
                iam.delete_role_policy(RoleName=role_name, PolicyName=policy_name)
        with _provider_call("DeleteRole"):
            iam.delete_role(RoleName=role_name)
