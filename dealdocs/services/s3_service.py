"""S3 service for the reference object backend."""

import configparser
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import ClientError, NoCredentialsError
from mypy_boto3_s3 import S3Client


def get_available_profiles() -> list[str]:
    """Get list of available AWS profiles from ~/.aws/config and ~/.aws/credentials."""
    profiles: set[str] = set()

    credentials_path = Path.home() / ".aws" / "credentials"
    if credentials_path.exists():
        config = configparser.ConfigParser()
        config.read(credentials_path)
        profiles.update(config.sections())

    config_path = Path.home() / ".aws" / "config"
    if config_path.exists():
        config = configparser.ConfigParser()
        config.read(config_path)
        for section in config.sections():
            # Config file uses "profile name" format
            profiles.add(section.removeprefix("profile "))

    profiles.add("default")
    return sorted(profiles)


def create_s3_client(profile: str, region: str = "us-west-2") -> S3Client:
    """Create an S3 client using the specified AWS profile.

    Raises:
        botocore.exceptions.ProfileNotFound: If the profile is unknown
    """
    session = boto3.Session(profile_name=profile, region_name=region)
    client: S3Client = session.client("s3")
    return client


def build_object_key(prefix: str, object_id: str, filename: str) -> str:
    """Storage key for a new upload: <prefix><uuid>/<filename>."""
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return f"{prefix}{object_id}/{filename}"


def generate_upload_url(
    client: S3Client,
    bucket: str,
    key: str,
    expires_in: int = 900,
    content_type: str | None = None,
) -> dict[str, Any]:
    """Presign a PUT for one object.

    Returns:
        Dictionary with ``url`` on success, ``error`` on failure
    """
    params: dict[str, Any] = {"Bucket": bucket, "Key": key}
    if content_type:
        params["ContentType"] = content_type
    try:
        url = client.generate_presigned_url(
            "put_object", Params=params, ExpiresIn=expires_in, HttpMethod="PUT"
        )
        return {"success": True, "bucket": bucket, "key": key, "url": url, "error": None}
    except (ClientError, NoCredentialsError) as e:
        return {"success": False, "bucket": bucket, "key": key, "url": None, "error": str(e)}


def check_file_exists(client: S3Client, bucket: str, key: str) -> bool:
    """Check if a file exists in S3."""
    try:
        client.head_object(Bucket=bucket, Key=key)
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
            return False
        raise


def validate_bucket_access(client: S3Client, bucket: str) -> dict[str, Any]:
    """Validate that we can access the specified S3 bucket.

    Returns:
        Dictionary with validation result
    """
    try:
        client.head_bucket(Bucket=bucket)
        return {
            "success": True,
            "bucket": bucket,
            "error": None,
        }
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code == "404":
            error_msg = f"Bucket '{bucket}' does not exist"
        elif error_code == "403":
            error_msg = f"Access denied to bucket '{bucket}'"
        else:
            error_msg = str(e)
        return {
            "success": False,
            "bucket": bucket,
            "error": error_msg,
        }
    except NoCredentialsError:
        return {
            "success": False,
            "bucket": bucket,
            "error": "AWS credentials not found",
        }


def get_object_metadata(client: S3Client, bucket: str, key: str) -> dict[str, Any]:
    """Get metadata for an S3 object.

    Args:
        client: S3 client
        bucket: S3 bucket name
        key: S3 object key

    Returns:
        Dictionary with object metadata
    """
    try:
        response = client.head_object(Bucket=bucket, Key=key)
        last_mod = response.get("LastModified")
        return {
            "success": True,
            "bucket": bucket,
            "key": key,
            "size": response.get("ContentLength", 0),
            "last_modified": last_mod.isoformat() if last_mod else "",
            "content_type": response.get("ContentType", ""),
            "etag": response.get("ETag", "").strip('"'),
            "error": None,
        }
    except ClientError as e:
        return {
            "success": False,
            "bucket": bucket,
            "key": key,
            "error": str(e),
        }
