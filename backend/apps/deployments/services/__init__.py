"""
部署服务层

- stages: 流水线的各个阶段
- pipeline: 按顺序执行阶段并记录结果
- deployment_service: 线程池调度与单主机互斥
"""
