import hashlib
import hmac
import json
from typing import Any, Dict

from loguru import logger

from dbclone.errors import ConfigurationError
from dbclone.services.run_log import Run, RunLogSink


class AuditSigner:
    """
    对结束的运行进行签名，之后对日志的修改可以被检测出来

    审计记录（运行摘要加上按顺序排列的全部日志）
    按确定的方式序列化后计算 SHA-256，
    再使用审计密钥对哈希做 HMAC-SHA256 签名
    """

    def __init__(self, secret: str, sink: RunLogSink):
        self.secret = secret
        self.sink = sink

    def build_record(self, run: Run) -> Dict[str, Any]:
        return {
            "run_id": run.id,
            "snapshot": run.config_snapshot,
            "source": run.source,
            "targets": run.targets,
            "started_at": run.started_at,
            "finished_at": run.finished_at,
            "status": run.status.value,
            "logs": [entry.to_dict() for entry in self.sink.entries(run.id)],
        }

    def compute_hash(self, run: Run) -> str:
        payload = json.dumps(self.build_record(run), sort_keys=True, ensure_ascii=False, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _signature(self, audit_hash: str) -> str:
        return hmac.new(self.secret.encode("utf-8"), audit_hash.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign(self, run: Run) -> str:
        if not self.secret:
            raise ConfigurationError("audit_secret is not configured, run cannot be signed")

        run.audit_hash = self.compute_hash(run)
        run.audit_signature = self._signature(run.audit_hash)
        logger.debug(f"Signed run {run.id}: {run.audit_hash}")
        return run.audit_signature

    def verify(self, run: Run) -> bool:
        if not run.audit_signature or not run.audit_hash or not self.secret:
            return False

        current_hash = self.compute_hash(run)
        if not hmac.compare_digest(run.audit_hash, current_hash):
            return False
        return hmac.compare_digest(run.audit_signature, self._signature(current_hash))
