"""
日志管理测试
"""

import asyncio
import logging

from logger import (
    ContextFilter,
    LogConfig,
    LogFormatter,
    LoggerManager,
    add_context,
    clear_context,
    get_logger,
    log_exception,
    reset_context,
)


def _record(message='msg'):
    return logging.LogRecord('test', logging.INFO, __file__, 1, message, None, None)


def test_context_is_isolated_per_task():
    context_filter = ContextFilter(['client', 'session_id'])

    async def session(client, session_id, started, results):
        add_context(client=client, session_id=session_id)
        started.append(client)
        # 让另一个会话在此期间设置自己的上下文
        while len(started) < 2:
            await asyncio.sleep(0)
        record = _record()
        context_filter.filter(record)
        results[client] = record.context

    async def run():
        started, results = [], {}
        await asyncio.gather(
            session('10.0.0.1:1', 1, started, results),
            session('10.0.0.2:2', 2, started, results),
        )
        return results

    results = asyncio.run(run())
    assert results['10.0.0.1:1'] == 'client=10.0.0.1:1 | session_id=1'
    assert results['10.0.0.2:2'] == 'client=10.0.0.2:2 | session_id=2'


def test_reset_context_restores_previous():
    context_filter = ContextFilter(['client'])
    clear_context()
    token = add_context(client='a')
    reset_context(token)

    record = _record()
    context_filter.filter(record)
    assert record.context == 'client=-'


def test_formatter_without_context():
    formatter = LogFormatter(fmt='[%(context)s] %(message)s')
    assert formatter.format(_record('hello')) == '[-] hello'


def test_formatter_color_does_not_leak():
    formatter = LogFormatter(fmt='%(levelname)s', use_color=True)
    record = _record()
    assert '\033[' in formatter.format(record)
    assert record.levelname == 'INFO'


def test_file_logging(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        manager = LoggerManager()
        manager.initialize(LogConfig(
            level='DEBUG',
            log_dir=str(tmp_path),
            log_file='proxy.log',
            enable_console=False,
            enable_file=True,
        ))
        clear_context()
        token = add_context(client='127.0.0.1:9', session_id=7)
        logging.getLogger('socks5-proxy-test').info('写入文件')
        reset_context(token)
        for handler in root.handlers:
            handler.flush()

        content = (tmp_path / 'proxy.log').read_text(encoding='utf-8')
        assert '写入文件' in content
        assert 'client=127.0.0.1:9 | session_id=7' in content
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)


def test_get_logger_returns_same_logger():
    assert get_logger('socks5-proxy-test') is get_logger('socks5-proxy-test')
    assert get_logger('socks5-proxy-test') is logging.getLogger('socks5-proxy-test')


def test_log_exception_records_traceback(caplog):
    log = get_logger('socks5-proxy-test')
    with caplog.at_level(logging.ERROR, logger='socks5-proxy-test'):
        try:
            raise RuntimeError('boom')
        except RuntimeError:
            log_exception(log, '会话 1 意外错误')

    record = caplog.records[-1]
    assert record.getMessage() == '会话 1 意外错误'
    assert record.exc_info[0] is RuntimeError
