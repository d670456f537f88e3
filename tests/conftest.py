import os
import io
import datetime as dt

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber

# keep boto3 away from real credentials and give it a region before the module loads
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')

import lambda_s3host  # noqa: E402

BUCKET = 'sites'
MODIFIED = dt.datetime(2024, 3, 1, 12, 30, 0, tzinfo=dt.timezone.utc)


def streaming_body(data: bytes) -> StreamingBody:
    return StreamingBody(io.BytesIO(data), len(data))


class FakeS3:
    """Dict backed stand in for the S3 client that records every call."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.calls = []

    def _lookup(self, op, Bucket, Key):
        self.calls.append((op, Bucket, Key))
        if Key not in self.objects:
            code = 'NoSuchKey' if op == 'GetObject' else '404'
            message = 'The specified key does not exist.' if op == 'GetObject' else 'Not Found'
            raise ClientError({'Error': {'Code': code, 'Message': message}}, op)
        return self.objects[Key]

    def get_object(self, Bucket, Key):
        body, content_type = self._lookup('GetObject', Bucket, Key)
        return {
            'Body': streaming_body(body),
            'ContentType': content_type,
            'ContentLength': len(body),
            'ETag': '"etag-{}"'.format(len(body)),
            'LastModified': MODIFIED,
        }

    def head_object(self, Bucket, Key):
        body, content_type = self._lookup('HeadObject', Bucket, Key)
        return {
            'ContentType': content_type,
            'ContentLength': len(body),
            'ETag': '"etag-{}"'.format(len(body)),
            'LastModified': MODIFIED,
        }


@pytest.fixture
def config():
    return lambda_s3host.Config(bucket=BUCKET, aliases={'www': 'acme', 'blank': ''})


@pytest.fixture
def fake_s3():
    return FakeS3({
        'acme/logo.png': (b'PNGDATA', 'image/png'),
        'acme/index.html': (b'<h1>acme</h1>', 'text/html'),
        'acme/docs/guide.html': (b'<p>guide</p>', 'text/html'),
        'beta/app.js': (b'console.log(1)', 'application/javascript'),
    })


@pytest.fixture
def s3_stub():
    client = boto3.client('s3', region_name='us-east-1')
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


def event(host='acme.example.com', path='/logo.png', method='GET', header='Host'):
    return {'headers': {header: host}, 'path': path, 'httpMethod': method}
