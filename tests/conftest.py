"""全局测试配置。"""

import os

# 在任何 paygate 模块导入之前设置，共享下发器不等待重试间隔
os.environ.setdefault("DISPATCH_RETRY_DELAY", "0")
