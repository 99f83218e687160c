"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings.
"""
import os

# 内存 SQLite，测试环境下 Celery 任务同步执行
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DIRECTORY__BASE_URL", "http://directory.test/api")
os.environ.setdefault("PAYMENT__GATEWAY_X__HASH_SECRET", "TESTSECRET")
