"""
测试公共配置

- 项目根目录加入 sys.path（与 python web.py 的导入方式一致）
- 日志文件写入临时目录
- 关闭免费时段模型升级，避免测试结果依赖当前时间
- 指向不存在的配置文件，只使用默认值和环境变量
"""

import os
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="moss-gateway-logs-")
os.environ["FREE_TIME_UPGRADE"] = "false"
os.environ["GATEWAY_CONFIG_FILE"] = str(project_root / "tests" / "missing-gateway.yaml")
os.environ.setdefault("LOG_LEVEL", "debug")
