"""boto3-backed drivers for S3 buckets and DynamoDB tables."""

from typing import Optional, Dict, Any, List

import boto3
from botocore.exceptions import ClientError

from .base import BaseDriver, ProviderResult
from .registry import DriverRegistry
from ..utils.errors import ErrorContext, PermanentDriverError

DEFAULT_ENCRYPTION_RULES = [
    {
        'ApplyServerSideEncryptionByDefault': {
            'SSEAlgorithm': 'AES256'
        },
        'BucketKeyEnabled': True
    }
]


def _tag_set(properties: Dict[str, Any]) -> List[Dict[str, str]]:
    """CloudFormation-style Tags list, with values coerced to strings."""
    return [
        {'Key': str(tag['Key']), 'Value': str(tag['Value'])}
        for tag in properties.get('Tags') or []
    ]


def _require(properties: Dict[str, Any], name: str, resource_type: str) -> Any:
    if not properties.get(name):
        raise PermanentDriverError(
            f"{resource_type} requires the '{name}' property",
            context=ErrorContext(resource_type=resource_type),
            suggestions=[f"Set {name} explicitly; generated names are not supported"]
        )
    return properties[name]


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


class S3BucketDriver(BaseDriver):
    """Driver for AWS::S3::Bucket with encryption at rest."""

    type_tag = 'AWS::S3::Bucket'

    def __init__(self, boto_session: boto3.Session):
        """Initialize S3 driver.

        Args:
            boto_session: Configured boto3 session
        """
        self.session = boto_session
        self.s3_client = boto_session.client('s3')

    def create(self, properties: Dict[str, Any]) -> ProviderResult:
        """Create the bucket, enable encryption, versioning and tags.

        Args:
            properties: Resolved bucket properties

        Returns:
            ProviderResult keyed by bucket name
        """
        bucket_name = _require(properties, 'BucketName', self.type_tag)
        region = self.session.region_name

        create_params = {'Bucket': bucket_name}

        # Add location constraint for non-us-east-1 regions
        if region and region != 'us-east-1':
            create_params['CreateBucketConfiguration'] = {
                'LocationConstraint': region
            }

        self.s3_client.create_bucket(**create_params)

        encryption = properties.get('BucketEncryption') or {}
        self.s3_client.put_bucket_encryption(
            Bucket=bucket_name,
            ServerSideEncryptionConfiguration={
                'Rules': encryption.get('ServerSideEncryptionConfiguration', DEFAULT_ENCRYPTION_RULES)
            }
        )

        self._apply_settings(bucket_name, properties, previous={})
        return self._result(bucket_name)

    def read(self, external_id: Optional[str], properties: Dict[str, Any]) -> Optional[ProviderResult]:
        """Check whether the bucket still exists.

        Args:
            external_id: Bucket name
            properties: Last resolved properties

        Returns:
            ProviderResult, or None if the bucket is gone
        """
        bucket_name = external_id or properties.get('BucketName')
        if not bucket_name:
            return None

        try:
            self.s3_client.head_bucket(Bucket=bucket_name)
        except ClientError as e:
            if _error_code(e) in ('NoSuchBucket', '404', 'NotFound'):
                return None
            raise

        return self._result(bucket_name)

    def update(
        self,
        external_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProviderResult:
        """Update mutable bucket settings.

        Raises:
            PermanentDriverError: If the bucket name changed, which would
                require replacing the bucket
        """
        bucket_name = _require(properties, 'BucketName', self.type_tag)
        if bucket_name != external_id:
            raise PermanentDriverError(
                f"Cannot rename bucket {external_id} to {bucket_name} in place",
                context=ErrorContext(resource_type=self.type_tag, operation='update'),
                suggestions=['Remove the bucket in one run and declare the new one in the next']
            )

        encryption = properties.get('BucketEncryption')
        if encryption != previous.get('BucketEncryption'):
            self.s3_client.put_bucket_encryption(
                Bucket=bucket_name,
                ServerSideEncryptionConfiguration={
                    'Rules': (encryption or {}).get(
                        'ServerSideEncryptionConfiguration', DEFAULT_ENCRYPTION_RULES
                    )
                }
            )

        self._apply_settings(bucket_name, properties, previous)
        return self._result(bucket_name)

    def delete(self, external_id: str, properties: Dict[str, Any]) -> None:
        """Delete the bucket. Missing buckets are treated as already deleted."""
        try:
            self.s3_client.delete_bucket(Bucket=external_id)
        except ClientError as e:
            if _error_code(e) != 'NoSuchBucket':
                raise

    def _apply_settings(
        self,
        bucket_name: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> None:
        versioning = properties.get('VersioningConfiguration')
        if versioning and versioning != previous.get('VersioningConfiguration'):
            self.s3_client.put_bucket_versioning(
                Bucket=bucket_name,
                VersioningConfiguration={'Status': versioning.get('Status', 'Enabled')}
            )

        tags = _tag_set(properties)
        if tags != _tag_set(previous):
            if tags:
                self.s3_client.put_bucket_tagging(
                    Bucket=bucket_name,
                    Tagging={'TagSet': tags}
                )
            else:
                self.s3_client.delete_bucket_tagging(Bucket=bucket_name)

    def _result(self, bucket_name: str) -> ProviderResult:
        region = self.session.region_name or 'us-east-1'
        return ProviderResult(
            external_id=bucket_name,
            attributes={
                'Arn': f"arn:aws:s3:::{bucket_name}",
                'DomainName': f"{bucket_name}.s3.amazonaws.com",
                'RegionalDomainName': f"{bucket_name}.s3.{region}.amazonaws.com",
            }
        )


class DynamoDBTableDriver(BaseDriver):
    """Driver for AWS::DynamoDB::Table with encryption."""

    type_tag = 'AWS::DynamoDB::Table'

    def __init__(self, boto_session: boto3.Session, wait_for_active: bool = True):
        """Initialize DynamoDB driver.

        Args:
            boto_session: Configured boto3 session
            wait_for_active: Block until the table reports ACTIVE after
                create and update calls
        """
        self.session = boto_session
        self.dynamodb_client = boto_session.client('dynamodb')
        self.wait_for_active = wait_for_active

    def create(self, properties: Dict[str, Any]) -> ProviderResult:
        """Create a new DynamoDB table.

        Args:
            properties: Resolved table properties

        Returns:
            ProviderResult keyed by table name
        """
        table_name = _require(properties, 'TableName', self.type_tag)

        create_params = {
            'TableName': table_name,
            'KeySchema': _require(properties, 'KeySchema', self.type_tag),
            'AttributeDefinitions': _require(properties, 'AttributeDefinitions', self.type_tag),
        }

        billing_mode = properties.get('BillingMode', 'PAY_PER_REQUEST')
        create_params['BillingMode'] = billing_mode

        if billing_mode == 'PROVISIONED':
            create_params['ProvisionedThroughput'] = properties.get(
                'ProvisionedThroughput',
                {'ReadCapacityUnits': 5, 'WriteCapacityUnits': 5}
            )

        stream_spec = properties.get('StreamSpecification')
        if stream_spec:
            create_params['StreamSpecification'] = {
                'StreamEnabled': True,
                'StreamViewType': stream_spec['StreamViewType'],
            }

        # Default to encryption with an AWS managed key
        sse_spec = properties.get('SSESpecification') or {}
        create_params['SSESpecification'] = {
            'Enabled': sse_spec.get('SSEEnabled', True),
            'SSEType': sse_spec.get('SSEType', 'KMS'),
        }

        for index_key in ('GlobalSecondaryIndexes', 'LocalSecondaryIndexes'):
            if properties.get(index_key):
                create_params[index_key] = properties[index_key]

        tags = _tag_set(properties)
        if tags:
            create_params['Tags'] = tags

        response = self.dynamodb_client.create_table(**create_params)
        self._wait(table_name)
        return self._result(response['TableDescription'])

    def read(self, external_id: Optional[str], properties: Dict[str, Any]) -> Optional[ProviderResult]:
        table_name = external_id or properties.get('TableName')
        if not table_name:
            return None

        try:
            response = self.dynamodb_client.describe_table(TableName=table_name)
        except ClientError as e:
            if _error_code(e) == 'ResourceNotFoundException':
                return None
            raise

        return self._result(response['Table'])

    def update(
        self,
        external_id: str,
        properties: Dict[str, Any],
        previous: Dict[str, Any]
    ) -> ProviderResult:
        """Update billing, throughput and tags of an existing table.

        Raises:
            PermanentDriverError: If an immutable property changed
        """
        for immutable in ('TableName', 'KeySchema'):
            if properties.get(immutable) != previous.get(immutable):
                raise PermanentDriverError(
                    f"Changing {immutable} of table {external_id} requires replacement",
                    context=ErrorContext(resource_type=self.type_tag, operation='update'),
                    suggestions=['Remove the table in one run and declare the new one in the next']
                )

        update_params: Dict[str, Any] = {}
        billing_mode = properties.get('BillingMode', 'PAY_PER_REQUEST')
        if billing_mode != previous.get('BillingMode', 'PAY_PER_REQUEST'):
            update_params['BillingMode'] = billing_mode
        if billing_mode == 'PROVISIONED' and (
            properties.get('ProvisionedThroughput') != previous.get('ProvisionedThroughput')
        ):
            update_params['ProvisionedThroughput'] = properties['ProvisionedThroughput']
        if properties.get('AttributeDefinitions') != previous.get('AttributeDefinitions'):
            update_params['AttributeDefinitions'] = properties['AttributeDefinitions']

        if update_params:
            response = self.dynamodb_client.update_table(TableName=external_id, **update_params)
            self._wait(external_id)
            description = response['TableDescription']
        else:
            description = self.dynamodb_client.describe_table(TableName=external_id)['Table']

        tags = _tag_set(properties)
        if tags and tags != _tag_set(previous):
            self.dynamodb_client.tag_resource(
                ResourceArn=description['TableArn'],
                Tags=tags
            )

        return self._result(description)

    def delete(self, external_id: str, properties: Dict[str, Any]) -> None:
        try:
            self.dynamodb_client.delete_table(TableName=external_id)
        except ClientError as e:
            if _error_code(e) != 'ResourceNotFoundException':
                raise

    def _wait(self, table_name: str) -> None:
        if self.wait_for_active:
            waiter = self.dynamodb_client.get_waiter('table_exists')
            waiter.wait(TableName=table_name)

    @staticmethod
    def _result(description: Dict[str, Any]) -> ProviderResult:
        attributes = {'Arn': description['TableArn']}
        if description.get('LatestStreamArn'):
            attributes['StreamArn'] = description['LatestStreamArn']
        return ProviderResult(external_id=description['TableName'], attributes=attributes)


def register_aws_drivers(registry: DriverRegistry, boto_session: boto3.Session) -> None:
    """Register the boto3 drivers shipped with stackpilot."""
    registry.register(S3BucketDriver.type_tag, S3BucketDriver(boto_session))
    registry.register(DynamoDBTableDriver.type_tag, DynamoDBTableDriver(boto_session))
