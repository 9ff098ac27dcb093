"""全局测试配置：所有测试在测试模式下运行。"""

import os

# 必须在导入 app.main 之前设置，lifespan 据此跳过预订自动完成后台任务。
os.environ["TESTING"] = "1"
