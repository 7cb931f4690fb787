"""
SOCKS5 代理 - 日志管理模块

功能概述:
本模块提供了代理的日志管理功能，包括：
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件和环境变量支持
5. 异常记录

会话上下文保存在 contextvars 中，每个会话协程只看到自己的
client / session_id，并发会话之间互不干扰。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

_context: contextvars.ContextVar = contextvars.ContextVar('socks5_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, both, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks5-proxy.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["client", "session_id"]


_DEFAULTS = LogConfig()

# LogConfig 字段 -> 覆盖它的环境变量
_ENV_FIELDS = {
    "level": "LOG_LEVEL",
    "log_dir": "LOG_DIR",
    "log_file": "LOG_FILE",
    "max_bytes": "LOG_MAX_BYTES",
    "backup_count": "LOG_BACKUP_COUNT",
    "rotation_type": "LOG_ROTATION_TYPE",
    "format_string": "LOG_FORMAT",
    "enable_console": "LOG_ENABLE_CONSOLE",
    "enable_file": "LOG_ENABLE_FILE",
    "enable_journal": "LOG_ENABLE_JOURNAL",
}


class ContextFilter(logging.Filter):
    """
    会话上下文过滤器

    为日志记录添加 %(context)s 字段，内容取自当前协程的上下文变量
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    @staticmethod
    def add_context(**kwargs) -> contextvars.Token:
        """
        在当前协程上下文中添加字段

        Returns:
            contextvars.Token: 用于 reset_context 恢复之前的上下文
        """
        data = dict(_context.get())
        data.update(kwargs)
        return _context.set(data)

    @staticmethod
    def clear_context():
        _context.set({})

    @staticmethod
    def reset_context(token: contextvars.Token):
        _context.reset(token)

    def filter(self, record):
        data = _context.get()
        record.context = " | ".join(
            f"{field}={data.get(field, '-')}" for field in self.context_fields
        )
        return True


class LogFormatter(logging.Formatter):
    """终端下按级别着色的格式化器，格式化后恢复 levelname"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方 logger）也要能格式化
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器（单例）

    进程内只配置一次根 logger；各模块通过 get_logger 取得子 logger，
    记录向上传播到根 logger 的处理器。
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self.loggers = {}
            self._initialized = True

    def load_config_from_file(self, config_file: str) -> LogConfig:
        """
        读取 YAML 配置文件中的 logging 段，环境变量优先

        文件不存在或无法解析时只使用环境变量和默认值。
        """
        try:
            import yaml
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            config_data = {}
        except Exception as e:
            print(f"无法读取日志配置 {config_file}: {e}，改用环境变量", file=sys.stderr)
            config_data = {}

        return self._merge_config(config_data.get('logging') or {})

    def _load_config_from_env(self) -> LogConfig:
        return self._merge_config({})

    @staticmethod
    def _merge_config(section: dict) -> LogConfig:
        values = {}
        for field_name, env_name in _ENV_FIELDS.items():
            default = getattr(_DEFAULTS, field_name)
            raw = os.getenv(env_name, section.get(field_name, default))
            if isinstance(default, bool):
                values[field_name] = str(raw).lower() == 'true'
            elif isinstance(default, int):
                values[field_name] = int(raw)
            else:
                values[field_name] = raw
        if section.get('context_fields'):
            values['context_fields'] = list(section['context_fields'])
        return LogConfig(**values)

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        优先使用显式传入的 config，其次是 config_file，最后只看环境变量。
        """
        if config:
            self.config = config
        elif config_file:
            self.config = self.load_config_from_file(config_file)
        else:
            self.config = self._load_config_from_env()

        if self.config.enable_file:
            Path(self.config.log_dir).mkdir(parents=True, exist_ok=True)
        self._setup_root_logger()

    def _level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def _setup_root_logger(self):
        root = logging.getLogger()
        root.setLevel(self._level())

        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()

        # 过滤器挂在处理器上，子 logger 传播上来的记录同样带上下文
        self.context_filter = ContextFilter(self.config.context_fields)

        if self.config.enable_console:
            self._attach(root, logging.StreamHandler(sys.stdout), use_color=sys.stdout.isatty())
        if self.config.enable_file:
            self._attach(root, self._file_handler(), use_color=False)
        if self.config.enable_journal and HAS_JOURNAL:
            self._attach(root, JournalHandler(), formatted=False)

    def _attach(self, root: logging.Logger, handler: logging.Handler,
                use_color: bool = False, formatted: bool = True):
        handler.setLevel(self._level())
        handler.addFilter(self.context_filter)
        if formatted:
            handler.setFormatter(LogFormatter(
                fmt=self.config.format_string,
                datefmt='%Y-%m-%d %H:%M:%S',
                use_color=use_color,
            ))
        root.addHandler(handler)

    def _file_handler(self) -> logging.Handler:
        """按 rotation_type 选择文件处理器：size / both 按大小，date 每日午夜，其余不轮转"""
        path = Path(self.config.log_dir) / self.config.log_file
        rotation = self.config.rotation_type

        if rotation in ('size', 'both'):
            return logging.handlers.RotatingFileHandler(
                path, maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count, encoding='utf-8')
        if rotation == 'date':
            return logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=self.config.backup_count, encoding='utf-8')
        return logging.FileHandler(path, encoding='utf-8')

    def set_level(self, level: int):
        """运行时调整根 logger 及其处理器的级别（用于 --debug）"""
        root = logging.getLogger()
        root.setLevel(level)
        for handler in root.handlers:
            handler.setLevel(level)

    def get_logger(self, name: str) -> logging.Logger:
        if name not in self.loggers:
            self.loggers[name] = logging.getLogger(name)
        return self.loggers[name]

    def log_exception(self, logger: logging.Logger, message: str = "会话异常", exc_info: bool = True):
        logger.error(message, exc_info=exc_info)


def get_logger(name: str) -> logging.Logger:
    """
    获取日志记录器（便捷函数）

    Args:
        name: 日志记录器名称

    Returns:
        logging.Logger: 日志记录器对象
    """
    return LoggerManager().get_logger(name)


def add_context(**kwargs) -> contextvars.Token:
    """
    为当前协程添加日志上下文（便捷函数）

    Returns:
        contextvars.Token: 传给 reset_context 以恢复
    """
    return ContextFilter.add_context(**kwargs)


def reset_context(token: contextvars.Token):
    ContextFilter.reset_context(token)


def clear_context():
    ContextFilter.clear_context()


def log_exception(logger: logging.Logger, message: str = "会话异常", exc_info: bool = True):
    """记录异常信息（便捷函数）"""
    LoggerManager().log_exception(logger, message, exc_info)
