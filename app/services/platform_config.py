"""
平台配置服务：管理 system_config 表的读写。

提供平台服务费率、自动完成时长等可在运行时调整的配置，
未配置或配置值非法时回退到默认值。
"""

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from app.database import get_db

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_FEE_RATE = Decimal("0.3")
DEFAULT_AUTO_COMPLETE_HOURS = 24


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(config_key) DO UPDATE SET
                   config_value = excluded.config_value,
                   updated_at = excluded.updated_at""",
            (key, value, now),
        )
        db.commit()
    finally:
        db.close()


# ── 业务配置 ──────────────────────────────────────────────


def get_platform_fee_rate() -> Decimal:
    """平台服务费率，取值范围 [0, 1)。"""
    raw = get_config("platform_fee_rate")
    if raw is None:
        return DEFAULT_PLATFORM_FEE_RATE
    try:
        rate = Decimal(raw)
    except InvalidOperation:
        logger.warning("platform_fee_rate 配置无效，使用默认值: %s", raw)
        return DEFAULT_PLATFORM_FEE_RATE
    if rate < 0 or rate >= 1:
        logger.warning("platform_fee_rate 超出范围，使用默认值: %s", raw)
        return DEFAULT_PLATFORM_FEE_RATE
    return rate


def _check_platform_fee_rate(rate: Decimal) -> None:
    if not isinstance(rate, Decimal) or not rate.is_finite() or rate < 0 or rate >= 1:
        raise PlatformConfigError("服务费率必须在 [0, 1) 范围内")


def set_platform_fee_rate(rate: Decimal) -> None:
    _check_platform_fee_rate(rate)
    set_config("platform_fee_rate", str(rate))


def get_auto_complete_hours() -> int:
    """待确认完成的预订经过多少小时后自动放款。"""
    raw = get_config("auto_complete_hours")
    if raw is None:
        return DEFAULT_AUTO_COMPLETE_HOURS
    try:
        hours = int(raw)
    except ValueError:
        logger.warning("auto_complete_hours 配置无效，使用默认值: %s", raw)
        return DEFAULT_AUTO_COMPLETE_HOURS
    return hours if hours > 0 else DEFAULT_AUTO_COMPLETE_HOURS


def _check_auto_complete_hours(hours: int) -> None:
    if isinstance(hours, bool) or not isinstance(hours, int) or hours <= 0:
        raise PlatformConfigError("自动完成时长必须为正整数")


def set_auto_complete_hours(hours: int) -> None:
    _check_auto_complete_hours(hours)
    set_config("auto_complete_hours", str(hours))


def update_platform_settings(
    platform_fee_rate: Decimal | None = None,
    auto_complete_hours: int | None = None,
) -> None:
    """
    管理后台批量修改配置：先校验全部取值，任一项非法时不写入任何配置。

    Raises:
        PlatformConfigError: 取值非法或未提供任何配置项。
    """
    if platform_fee_rate is None and auto_complete_hours is None:
        raise PlatformConfigError("至少需要提供一项配置")
    if platform_fee_rate is not None:
        _check_platform_fee_rate(platform_fee_rate)
    if auto_complete_hours is not None:
        _check_auto_complete_hours(auto_complete_hours)

    if platform_fee_rate is not None:
        set_platform_fee_rate(platform_fee_rate)
    if auto_complete_hours is not None:
        set_auto_complete_hours(auto_complete_hours)
    logger.info(
        "平台配置已更新: platform_fee_rate=%s, auto_complete_hours=%s",
        platform_fee_rate, auto_complete_hours,
    )
