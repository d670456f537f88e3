#!/usr/bin/env python3
#
# Lambda S3 Host
#
# Python code to be used in AWS Lambda, called by AWS API Gateway Lambda proxy
# (or an ALB target group), to serve static websites for many tenants out of a
# single S3 bucket. The first subdomain of the called url selects the key
# prefix within the bucket, so https://acme.example.com/logo.png is served from
# s3://$S3_BUCKET/acme/logo.png. Missing objects fall back to /index.html.
#
# Author(s):
#
# Requisite: - python3
#            - pip3: boto3
#            - S3_BUCKET env var
#            - LOG_LEVEL env var (optional, defaults to INFO)
#            - any other env var whose name matches a subdomain replaces
#              that subdomain as the key prefix, eg www=acme
#            - lambda execution role allowed s3:GetObject on the bucket
#
# Resources: https://docs.aws.amazon.com/apigateway/latest/developerguide/set-up-lambda-proxy-integrations.html
#            https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/s3.html
#
# Usage: handler lambda_s3host.lambda_handler
#        S3_BUCKET=my-bucket python3 lambda_s3host.py acme.example.com /logo.png [GET|HEAD]

import os
import sys
import json
import types
import base64
import typing
import boto3
import logging as l
import email.utils
import datetime as dt
from botocore.exceptions import BotoCoreError, ClientError

################################################################################
##                                                                            ##
##  Configuration                                                             ##
##                                                                            ##
################################################################################

# object served when the requested one is missing
default_path = '/index.html'

# levels accepted for LOG_LEVEL, anything else falls back to INFO
log_levels = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


class Config(typing.NamedTuple):
    """Process wide settings, built once at cold start."""
    bucket: str
    aliases: typing.Mapping[str, str]
    log_level: str = 'INFO'

    @classmethod
    def from_environ(cls, environ: typing.Mapping[str, str] = os.environ) -> 'Config':
        """Snapshot the environment into a read only Config."""
        level = environ.get('LOG_LEVEL', 'INFO').upper()
        return cls(
            bucket=environ.get('S3_BUCKET', ''),
            aliases=types.MappingProxyType(dict(environ)),
            log_level=level if level in log_levels else 'INFO',
        )


CONFIG = Config.from_environ()

# configure logging level and format
l.basicConfig(
        level=CONFIG.log_level,
        format='%(asctime)s %(levelname)-8s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        )
# lambda installs its own root handler, so basicConfig alone is a no-op there
l.getLogger().setLevel(CONFIG.log_level)

if not CONFIG.bucket:
    l.warning('S3_BUCKET is not set, every lookup will fail')

################################################################################
##                                                                            ##
##  Records                                                                   ##
##                                                                            ##
################################################################################

class ErrorPayload(typing.NamedTuple):
    message: str

    def to_json(self) -> str:
        return json.dumps({'message': self.message})


class Response(typing.NamedTuple):
    """HTTP response in the shape API Gateway expects back from a proxy lambda."""
    status_code: int
    headers: typing.Dict[str, str]
    body: typing.Optional[str] = None
    is_base64_encoded: bool = False

    def to_dict(self) -> dict:
        resp = {
            'statusCode': self.status_code,
            'headers': dict(self.headers),
        }
        if self.body is not None:
            resp['body'] = self.body
        if self.is_base64_encoded:
            resp['isBase64Encoded'] = True
        return resp


class StorageResult(typing.NamedTuple):
    """Outcome of a single S3 call, either data or an error message."""
    key: str
    data: typing.Optional[dict] = None
    error: typing.Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

################################################################################
##                                                                            ##
##  Functions                                                                 ##
##                                                                            ##
################################################################################

def get_parameter_case_insensitive(obj: typing.Optional[dict], key: str, default: str = '') -> str:
    """Get a value from a dict matching the key regardless of case."""
    for k, v in (obj or {}).items():
        if k.lower() == key.lower():
            return v if v is not None else default
    return default


def tenant_prefix(headers: typing.Optional[dict], aliases: typing.Mapping[str, str]) -> str:
    """Key prefix for a request, the first subdomain of the host or its alias.

    Args:
      headers (dict): request headers, any casing
      aliases (dict): subdomain to prefix overrides, empty values ignored

    Returns:
      str
    """
    prefix = get_parameter_case_insensitive(headers, 'host').split('.')[0]
    return aliases.get(prefix) or prefix


def object_key(prefix: str, path: str) -> str:
    return prefix + path


def error_response(code: int, message: str) -> Response:
    """Build a json error response."""
    return Response(
        status_code=code,
        headers={'content-type': 'application/json'},
        body=ErrorPayload(message).to_json(),
    )


def _error_message(e: Exception) -> str:
    # client errors carry the service message, eg "The specified key does not exist."
    if isinstance(e, ClientError):
        return e.response.get('Error', {}).get('Message') or str(e)
    return str(e)


def fetch_object(s3: 'boto3 s3 client', bucket: str, key: str, method: str) -> StorageResult:
    """Run one GET or HEAD against S3, reading the body for GET."""
    l.debug('Running {} against s3://{}/{}'.format(method, bucket, key))
    try:
        if method == 'GET':
            data = s3.get_object(Bucket=bucket, Key=key)
            data = dict(data, Body=data['Body'].read())
        else:
            data = s3.head_object(Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as e:
        l.warning('{} s3://{}/{} failed: {}'.format(method, bucket, key, e))
        return StorageResult(key, error=_error_message(e))
    return StorageResult(key, data=data)


def http_date(modified: dt.datetime) -> str:
    """Format a timestamp as an RFC 7231 HTTP-date."""
    # botocore hands back dateutil tzutc, format_datetime only accepts timezone.utc
    if modified.tzinfo is None:
        modified = modified.replace(tzinfo=dt.timezone.utc)
    return email.utils.format_datetime(modified.astimezone(dt.timezone.utc), usegmt=True)


def metadata_headers(data: dict) -> typing.Dict[str, str]:
    """Headers passed through from the object metadata, skipping absent ones."""
    headers = {}
    if data.get('ContentType'):
        headers['Content-Type'] = data['ContentType']
    if data.get('ETag'):
        headers['ETag'] = data['ETag']
    if data.get('LastModified'):
        headers['Last-Modified'] = http_date(data['LastModified'])
    return headers


def response_from_s3(s3: 'boto3 s3 client', bucket: str, prefix: str, path: str, method: str) -> Response:
    """Serve prefix + path from the bucket for a GET or HEAD request."""
    if method not in ('GET', 'HEAD'):
        return error_response(501, 'Not Implemented ({})'.format(method))

    result = fetch_object(s3, bucket, object_key(prefix, path), method)
    if not result.ok:
        return error_response(404, '{}: {}'.format(result.key, result.error))

    headers = metadata_headers(result.data)
    if method == 'GET':
        return Response(
            status_code=200,
            headers=headers,
            body=base64.b64encode(result.data['Body']).decode('ascii'),
            is_base64_encoded=True,
        )

    headers['Content-Length'] = str(result.data['ContentLength'])
    return Response(status_code=200, headers=headers)


def handle(event: dict, config: Config, s3: 'boto3 s3 client') -> dict:
    """Serve one proxy event, falling back to the default path on a 404."""
    prefix = tenant_prefix(event.get('headers'), config.aliases)
    path   = event.get('path') or ''
    method = event.get('httpMethod') or ''

    response = response_from_s3(s3, config.bucket, prefix, path, method)

    if response.status_code == 404 and path != default_path:
        l.debug('{}{} not found, falling back to {}'.format(prefix, path, default_path))
        response = response_from_s3(s3, config.bucket, prefix, default_path, method)

    l.info('{} {}{} -> {}'.format(method, prefix, path, response.status_code))
    return response.to_dict()


_s3 = None


def s3_client() -> 'boto3 s3 client':
    """Shared S3 client, created on first use and reused across invocations."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client('s3')
    return _s3


def lambda_handler(event: dict, context: dict) -> dict:
    return handle(event, CONFIG, s3_client())

################################################################################
##                                                                            ##
##  Run                                                                       ##
##                                                                            ##
################################################################################

if __name__ == "__main__":
    if len(sys.argv) < 3:
        sys.exit('usage: {} host path [method]'.format(sys.argv[0]))

    event = {
        'headers': {'Host': sys.argv[1]},
        'path': sys.argv[2],
        'httpMethod': sys.argv[3].upper() if len(sys.argv) > 3 else 'GET',
    }
    print(json.dumps(lambda_handler(event, {}), indent=2))
