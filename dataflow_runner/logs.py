"""
Retrieval of failed step logs.

EMR ships step logs to ``<LogUri>/<jobflow id>/steps/<step id>/`` as gzipped
files (controller.gz, stderr.gz, stdout.gz, syslog.gz). They are downloaded to a
temporary directory, decompressed and returned keyed by file name.
"""

import gzip
import logging
import tempfile
from pathlib import Path
from urllib.parse import urlparse

from botocore.exceptions import BotoCoreError, ClientError

from .credentials import get_aws_session
from .errors import LogRetrievalError

logger = logging.getLogger(__name__)


class S3Downloader:
    """Downloads listed S3 objects from one bucket into a local directory."""

    def __init__(self, s3, bucket: str, directory: str | Path):
        self.s3 = s3
        self.bucket = bucket
        self.directory = Path(directory)

    def each_page(self, page: dict) -> None:
        """Callback for one page of ListObjectsV2 results."""
        for obj in page.get("Contents", []):
            self.download_to_file(obj["Key"])

    def download_to_file(self, key: str) -> Path:
        if not key:
            raise ValueError("Key parameter cannot be empty")

        # The object key is kept as the relative output path
        target = self.directory / key
        target.parent.mkdir(parents=True, exist_ok=True)
        self.s3.download_file(self.bucket, key, str(target))
        return target


class LogRetriever:
    """Fetches the logs a cluster wrote for its steps."""

    def __init__(self, jobflow_id: str, emr=None, s3=None, session=None):
        if session is None and (emr is None or s3 is None):
            raise ValueError("A session is needed unless both the emr and s3 clients are given")
        self.jobflow_id = jobflow_id
        self.emr = emr if emr is not None else session.client("emr")
        self.s3 = s3 if s3 is not None else session.client("s3")

    @classmethod
    def from_credentials(cls, access_key_id: str, secret_access_key: str, region: str, jobflow_id: str):
        session = get_aws_session(access_key_id, secret_access_key, region)
        return cls(jobflow_id, session=session)

    def locate_log_root(self) -> tuple[str, str]:
        """Bucket and key prefix of the cluster's LogUri."""
        try:
            cluster = self.emr.describe_cluster(ClusterId=self.jobflow_id)["Cluster"]
        except (BotoCoreError, ClientError) as e:
            raise LogRetrievalError(f"Couldn't fetch LogUri: {e}") from e

        raw = cluster.get("LogUri") or ""
        if not raw:
            raise LogRetrievalError("LogUri cannot be empty for the logs to be retrieved")

        uri = urlparse(raw)
        if not uri.scheme or not uri.netloc:
            raise LogRetrievalError(f"Couldn't parse LogUri: {raw}")
        return uri.netloc, uri.path.lstrip("/")

    def step_prefix(self, prefix: str, step_id: str) -> str:
        parts = [p for p in prefix.split("/") if p]
        return "/".join(parts + [self.jobflow_id, "steps", step_id]) + "/"

    def fetch_step_logs(self, step_id: str) -> dict[str, str]:
        """Download and decompress every log file of one step."""
        bucket, prefix = self.locate_log_root()
        key_prefix = self.step_prefix(prefix, step_id)

        with tempfile.TemporaryDirectory(prefix=f"{self.jobflow_id}-{step_id}-") as tmp:
            try:
                self.download_log_files(bucket, key_prefix, tmp)
            except (BotoCoreError, ClientError, OSError, ValueError) as e:
                raise LogRetrievalError(f"Couldn't download step logs: {e}") from e

            try:
                return read_gz_files(Path(tmp) / key_prefix)
            except (OSError, EOFError, UnicodeDecodeError) as e:
                raise LogRetrievalError(f"Couldn't read gzipped log files: {e}") from e

    def download_log_files(self, bucket: str, key_prefix: str, directory: str | Path) -> None:
        downloader = S3Downloader(self.s3, bucket, directory)
        paginator = self.s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket, Prefix=key_prefix):
            downloader.each_page(page)


def read_gz_files(directory: str | Path) -> dict[str, str]:
    """Decompress every file in directory, keyed by file name."""
    directory = Path(directory)
    if not directory.is_dir():
        return {}

    contents = {}
    for path in sorted(directory.iterdir()):
        if path.is_file():
            with gzip.open(path, "rt", encoding="utf-8", errors="replace") as fh:
                contents[path.name] = fh.read()
    return contents
