import logging

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    max_retries=None,         # 重试预算记在 RawMessage.attempts 上，不靠 Celery 计数
    acks_late=True,           # 任务执行完才 ack，防止 worker 崩溃时任务丢失
    reject_on_worker_lost=True,
)
def process_raw_message(self, raw_message_id: str):
    """
    异步处理一条 RawMessage。

    重试策略（见 pipeline.record_transient_failure）：
      - attempts 持久化在数据库，进程重启不丢
      - 指数退避：base → 2*base → 4*base ...，封顶 PIPELINE_RETRY_MAX_DELAY
      - 达到 PIPELINE_MAX_ATTEMPTS 后进入 DLQ
    超时（soft time limit）：放弃本次尝试，行保持最后的持久状态，重新入队。
    审计写入失败：事务已回滚，原样重新入队。
    """
    from labresults.exceptions import AuditWriteFailure, TransientStorageFailure
    from labresults.pipeline import record_transient_failure, retry_delay, run_pipeline

    logger.info("[Celery][process_raw_message] raw=%s (delivery %d)",
                raw_message_id, self.request.retries + 1)

    try:
        outcome = run_pipeline(raw_message_id)
    except SoftTimeLimitExceeded:
        logger.warning("[Celery] raw=%s exceeded %ss stage timeout, abandoning attempt",
                       raw_message_id, settings.PIPELINE_STAGE_TIMEOUT)
        outcome = record_transient_failure(
            raw_message_id,
            TransientStorageFailure(message=f"Stage timed out after {settings.PIPELINE_STAGE_TIMEOUT}s"),
        )
    except AuditWriteFailure as exc:
        countdown = retry_delay(self.request.retries + 1)
        logger.error("[Celery] raw=%s audit write failed, re-queue in %ss", raw_message_id, countdown)
        raise self.retry(exc=exc, countdown=countdown)

    if outcome.needs_retry:
        raise self.retry(countdown=outcome.retry_in)

    logger.info("[Celery] raw=%s finished with status %s", raw_message_id, outcome.status)
    return outcome.status


def enqueue_raw_message(raw_message_id) -> None:
    """事务提交后调用（transaction.on_commit），保证 worker 一定能读到这行。"""
    process_raw_message.delay(str(raw_message_id))
