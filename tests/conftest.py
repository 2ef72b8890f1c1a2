import os

# 测试环境配置 etc/test.yaml，必须在导入 config 之前设置
os.environ.setdefault("environment", "test")

import pytest

from core.logger import LogLevelEnum, setup_loguru
from ext.file_system import FileSystemFactory


@pytest.fixture(scope="session", autouse=True)
def setup_logging():
    """测试期间输出 DEBUG 日志"""
    setup_loguru(LogLevelEnum.DEBUG)


@pytest.fixture(autouse=True)
def clear_file_system_cache():
    """每个用例结束后清除工厂缓存"""
    yield
    FileSystemFactory.clear_cache()
