"""全局测试配置：确保所有测试在测试模式下运行。"""

import os

# 在任何模块导入之前设置环境变量，
# 防止 easypay.main 启动后台任务，并让模拟网关无延迟、不随机失败。
os.environ["TESTING"] = "1"
os.environ["GATEWAY_LATENCY"] = "0"
os.environ["GATEWAY_FAILURE_RATE"] = "0"
os.environ.pop("GATEWAY_URL", None)
