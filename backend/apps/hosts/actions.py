"""
预定义诊断命令白名单

租户只能按 key 选择这里列出的命令，不接受任意shell输入。
模板中可用的占位符: {service}, {install_path}（均已转义）
"""

PREDEFINED_ACTIONS = {
    'uptime': {
        'title': '系统运行时间与负载',
        'command': 'uptime',
        'timeout': 10,
    },
    'disk_usage': {
        'title': '磁盘使用情况',
        'command': 'df -h',
        'timeout': 10,
    },
    'memory': {
        'title': '内存使用情况',
        'command': 'free -m',
        'timeout': 10,
    },
    'os_release': {
        'title': '操作系统版本',
        'command': 'cat /etc/os-release',
        'timeout': 10,
    },
    'listening_ports': {
        'title': '监听端口',
        'command': '{sudo}ss -tulpn 2>/dev/null || {sudo}netstat -tulpn 2>/dev/null',
        'timeout': 15,
    },
    'service_status': {
        'title': '服务状态',
        'command': '{sudo}systemctl status {service} --no-pager -l 2>&1 || true',
        'timeout': 15,
    },
    'service_journal': {
        'title': '服务最近日志',
        'command': '{sudo}journalctl -u {service} -n 100 --no-pager 2>&1 || true',
        'timeout': 20,
    },
    'install_dir': {
        'title': '安装目录内容',
        'command': 'ls -la {install_path} 2>&1',
        'timeout': 10,
    },
}


def list_actions():
    return [{'key': key, 'title': definition['title']} for key, definition in PREDEFINED_ACTIONS.items()]
