"""
支付轮询：展示二维码期间定时查单，作为回调丢失时的兜底
状态：idle → qr_displayed → succeeded | failed | expired
进入 qr_displayed 后同时启动两个计时：到 expires_at 的倒计时，以及固定间隔的查单。
查单结果交给与回调相同的 apply()，先到达终态者生效，另一个随即停止。
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from subscription_engine.core.config import settings
from subscription_engine.core.database import utcnow
from subscription_engine.core.exceptions import GatewayError, TransientGatewayError
from subscription_engine.schemas.payment import ReconciliationResult

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    IDLE = "idle"
    QR_DISPLAYED = "qr_displayed"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATES = (PollerState.SUCCEEDED, PollerState.FAILED, PollerState.EXPIRED)


def state_for_result(result: ReconciliationResult) -> Optional[PollerState]:
    """对账结果对应的终态，仍待支付返回 None"""
    if result.payment_status == "completed":
        return PollerState.SUCCEEDED
    if result.payment_status in ("failed", "refunded"):
        return PollerState.FAILED
    if result.payment_status == "cancelled":
        return PollerState.EXPIRED
    return None


class PaymentPoller:
    """
    单个订单的轮询器。
    query_and_apply 为一次"查单 + 对账"，任何异常都视为结果不确定，下一轮重试。
    on_expire 在倒计时结束时调用（通常用于关单），可选。
    """

    def __init__(
        self,
        order_id: str,
        expires_at: datetime,
        query_and_apply: Callable[[str], Awaitable[ReconciliationResult]],
        on_expire: Optional[Callable[[str], Awaitable[object]]] = None,
        interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.order_id = order_id
        self.expires_at = expires_at
        self.query_and_apply = query_and_apply
        self.on_expire = on_expire
        self.interval = interval if interval is not None else settings.PAYMENT_POLL_INTERVAL
        self.clock = clock or utcnow
        self.state = PollerState.IDLE
        self.last_result: Optional[ReconciliationResult] = None
        self.poll_count = 0
        self._done = asyncio.Event()
        # 查单与过期处理互斥，取消任务时不会打断进行中的数据库操作
        self._io_lock = asyncio.Lock()
        self._expiring = False
        self._tasks: list[asyncio.Task] = []

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def start(self) -> None:
        """展示二维码：启动倒计时与查单两个任务"""
        if self.state != PollerState.IDLE:
            raise RuntimeError(f"轮询器已启动，当前状态 {self.state.value}")
        self.state = PollerState.QR_DISPLAYED
        logger.info("开始轮询订单 order_id=%s expires_at=%s interval=%ss", self.order_id, self.expires_at, self.interval)
        self._tasks = [
            asyncio.create_task(self._countdown(), name=f"poller-expire-{self.order_id}"),
            asyncio.create_task(self._poll_loop(), name=f"poller-poll-{self.order_id}"),
        ]

    async def wait(self) -> PollerState:
        await self._done.wait()
        return self.state

    async def run(self) -> PollerState:
        """启动并等待终态"""
        self.start()
        try:
            return await self.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """停止全部计时任务，会等待进行中的查单完成。未到终态时回到 idle。"""
        current = asyncio.current_task()
        async with self._io_lock:
            for task in self._tasks:
                if task is not current and not task.done():
                    task.cancel()
        for task in self._tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("轮询任务异常退出 order_id=%s task=%s: %s", self.order_id, task.get_name(), e)
        self._tasks = []
        if not self.is_terminal:
            self.state = PollerState.IDLE
            self._done.set()

    def _finish(self, state: PollerState) -> bool:
        """进入终态，只有第一次生效。调用方需持有 _io_lock。"""
        if self.is_terminal:
            return False
        self.state = state
        self._done.set()
        for task in self._tasks:
            if task is not asyncio.current_task() and not task.done():
                task.cancel()
        logger.info("轮询结束 order_id=%s state=%s polls=%s", self.order_id, state.value, self.poll_count)
        return True

    async def _countdown(self) -> None:
        delay = (self.expires_at - self.clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        self._expiring = True
        async with self._io_lock:
            if self.is_terminal:
                return
            state = PollerState.EXPIRED
            if self.on_expire is not None:
                try:
                    outcome = await self.on_expire(self.order_id)
                except Exception as e:
                    logger.warning("过期处理失败 order_id=%s: %s", self.order_id, e)
                else:
                    # 关单时网关报告已支付，则以支付成功结束
                    if isinstance(outcome, ReconciliationResult):
                        self.last_result = outcome
                        if state_for_result(outcome) == PollerState.SUCCEEDED:
                            state = PollerState.SUCCEEDED
            self._finish(state)

    async def _poll_loop(self) -> None:
        while not self.is_terminal:
            await asyncio.sleep(self.interval)
            async with self._io_lock:
                if self.is_terminal or self._expiring:
                    return
                self.poll_count += 1
                try:
                    result = await self.query_and_apply(self.order_id)
                except TransientGatewayError as e:
                    logger.info("查单结果不确定，下一轮重试 order_id=%s: %s", self.order_id, e)
                    continue
                except GatewayError as e:
                    logger.warning("查单失败，下一轮重试 order_id=%s: %s", self.order_id, e)
                    continue
                except Exception:
                    # 数据库锁等待超时等对账异常同样不改变订单状态，下一轮重试
                    logger.exception("查单对账异常，下一轮重试 order_id=%s", self.order_id)
                    continue
                self.last_result = result
                state = state_for_result(result)
                if state is not None:
                    self._finish(state)
                    return
