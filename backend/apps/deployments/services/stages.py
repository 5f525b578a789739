"""
部署流水线的各个阶段

每个阶段是一个独立的类，通过 PipelineContext 在远程主机上执行命令。
所有远程命令都可以重复执行（先检查再操作、先删除再创建、`|| true` 容错），
部署失败后重新部署即可恢复，不需要手动清理。
"""
import json
import logging
import re
import secrets
import time

from django.conf import settings

from apps.hosts.exceptions import OrchestrationError, BuildError, ServiceStartError, CommandTimeoutError
from apps.hosts.services.command_executor import shell_quote, sudo_prefix
from apps.hosts.services.status_service import CALLBACK_KEY_FILE, read_callback_key

logger = logging.getLogger(__name__)

GO_BINARY = '/usr/local/go/bin/go'
GO_ROOT = '/usr/local/go'

# go build 某些失败场景退出码为0，输出中出现这些内容即视为失败
BUILD_ERROR_MARKERS = ('permission denied', 'cannot find package', 'undefined:')


class PipelineContext:
    """一次部署执行期间各阶段共享的状态"""

    def __init__(self, deployment, source, manager, session, sleep=time.sleep):
        self.deployment = deployment
        self.host = deployment.host
        self.source = source
        self.manager = manager
        self.session = session
        self.sleep = sleep
        self.sudo = sudo_prefix(self.host.username)
        self.install_path = self.host.install_path.rstrip('/') or '/'
        self.package_manager = None
        self.source_root = None
        self.version = None
        self.callback_key = None

    def path(self, *parts):
        """安装目录下的路径（已转义）"""
        return shell_quote('/'.join([self.install_path, *parts]))

    @property
    def service(self):
        return shell_quote(self.source.service_name)

    @property
    def binary(self):
        return self.path(self.source.binary_name)

    def run(self, command, timeout=60, check=False, error_class=OrchestrationError, error_message='远程命令执行失败'):
        result = self.manager.run(self.session, command, timeout=timeout)
        if check and not result.ok:
            detail = result.output[-1000:] or f'退出码 {result.exit_code}'
            raise error_class(f'{error_message}: {detail}')
        return result

    def log(self, level, message):
        log_method = logger.error if level == 'error' else logger.info
        log_method(f'[deployment={self.deployment.pk}] {message}')
        self.deployment.log(level, message)


class Stage:
    """流水线阶段基类"""
    name = ''
    title = ''

    def run(self, ctx: PipelineContext):
        raise NotImplementedError

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name}>'


class PreflightStage(Stage):
    """确认包管理器可用，必要时修复过期的Ubuntu软件源"""
    name = 'preflight'
    title = '检查系统环境'

    def run(self, ctx):
        result = ctx.run('. /etc/os-release 2>/dev/null && echo "$ID $VERSION_ID" || uname -sr', timeout=15)
        ctx.log('info', f'系统: {result.stdout or "未知"}')

        result = ctx.run(
            'for pm in apt-get dnf yum; do if command -v $pm >/dev/null 2>&1; then echo $pm; break; fi; done',
            timeout=15,
        )
        ctx.package_manager = result.stdout.strip() or None
        if ctx.package_manager is None:
            raise OrchestrationError('未找到受支持的包管理器（apt-get / dnf / yum）')

        sudo = ctx.sudo
        if ctx.package_manager == 'apt-get':
            command = (
                f"if {sudo}apt-get update -qq 2>&1 | grep -q '^E:'; then "
                f". /etc/os-release; "
                f"if [ \"$ID\" = ubuntu ]; then "
                f"{sudo}cp -n /etc/apt/sources.list /etc/apt/sources.list.backup 2>/dev/null || true; "
                f"{sudo}sed -i -e 's|http://[a-z.]*archive.ubuntu.com|http://old-releases.ubuntu.com|g' "
                f"-e 's|http://security.ubuntu.com|http://old-releases.ubuntu.com|g' /etc/apt/sources.list; "
                f"echo REPAIRED; "
                f"fi; "
                f"if {sudo}apt-get update -qq 2>&1 | grep -q '^E:'; then echo BROKEN; fi; "
                f"fi"
            )
        else:
            command = f'{sudo}{ctx.package_manager} makecache -q >/dev/null 2>&1 || echo BROKEN'

        result = ctx.run(command, timeout=300)
        if 'REPAIRED' in result.stdout:
            ctx.log('warning', '软件源已切换到 old-releases（系统版本已停止维护）')
        if 'BROKEN' in result.stdout:
            raise OrchestrationError(f'包管理器不可用: {ctx.package_manager}')
        ctx.log('info', f'包管理器可用: {ctx.package_manager}')


class DirectoryStage(Stage):
    name = 'directories'
    title = '创建安装目录'

    def run(self, ctx):
        ctx.run(
            f'{ctx.sudo}mkdir -p {ctx.path()} {ctx.path("data")} {ctx.path("certs")} '
            f'&& {ctx.sudo}chmod 755 {ctx.path()} {ctx.path("data")}',
            timeout=30, check=True, error_message='创建安装目录失败',
        )
        ctx.log('info', f'安装目录已就绪: {ctx.install_path}')


class CredentialStage(Stage):
    """
    生成主机的回调API Key并写入实例描述文件

    远程服务没有独立的凭证，控制面板与它之间的信任全部来自这里写入的内容。
    """
    name = 'credentials'
    title = '写入实例凭证'

    def run(self, ctx):
        host = ctx.host
        owner = host.created_by

        key = secrets.token_hex(32)
        host.callback_api_key = key
        host.save(update_fields=['callback_api_key', 'updated_at'])
        ctx.callback_key = key
        ctx.log('info', '已生成新的回调API Key')

        descriptor = '\n'.join([
            '# 由控制面板生成，请勿修改',
            f'owner_id: {owner.pk}',
            f'license_key: {owner.license_key}',
            f'instance_id: {host.pk}',
            f'control_plane_url: {settings.CONTROL_PLANE_URL}',
        ])
        descriptor_path = ctx.path('data', 'instance.conf')
        key_path = ctx.path(CALLBACK_KEY_FILE)
        ctx.run(
            f'printf "%s\\n" {shell_quote(descriptor)} | {ctx.sudo}tee {descriptor_path} >/dev/null '
            f'&& printf "%s\\n" {shell_quote(key)} | {ctx.sudo}tee {key_path} >/dev/null '
            f'&& {ctx.sudo}chmod 600 {descriptor_path} {key_path}',
            timeout=30, check=True, error_message='写入实例凭证失败',
        )
        ctx.log('info', f'实例凭证已写入（所有者: {owner.username}）')


def parse_version(text):
    """从 `go version` 输出中提取版本号元组，无法识别时返回None"""
    match = re.search(r'go(\d+(?:\.\d+)*)', text or '')
    if not match:
        return None
    return tuple(int(part) for part in match.group(1).split('.'))


class ToolchainStage(Stage):
    """Go工具链与构建依赖（已满足版本要求时跳过安装）"""
    name = 'toolchain'
    title = '准备构建工具链'

    def run(self, ctx):
        required_text = ctx.source.toolchain_version
        required = parse_version(f'go{required_text}')

        result = ctx.run(f'{GO_BINARY} version 2>/dev/null || echo NOT_FOUND', timeout=30)
        installed = parse_version(result.stdout) if 'NOT_FOUND' not in result.stdout else None

        if installed and required and installed >= required:
            ctx.log('info', f'Go已安装: {result.stdout.strip()}，跳过安装')
        else:
            if installed:
                ctx.log('info', f'Go版本过低（{".".join(map(str, installed))}），升级到 {required_text}')
            else:
                ctx.log('info', f'未检测到Go，开始安装 {required_text}')
            self._install_go(ctx, required_text)

        self._install_build_dependencies(ctx)

    def _install_go(self, ctx, version):
        url = ctx.source.toolchain_url_template.format(version=version)
        # 归档文件名带部署ID，重复执行互不干扰
        archive = shell_quote(f'/tmp/go{version}-{ctx.deployment.pk}.tar.gz')
        result = ctx.run(
            f'rm -f {archive} && '
            f'(curl -fsSL -o {archive} {shell_quote(url)} || wget -q -O {archive} {shell_quote(url)}) && '
            f'{ctx.sudo}rm -rf {GO_ROOT} && '
            f'{ctx.sudo}tar -C /usr/local -xzf {archive} && '
            f'rm -f {archive} && '
            f'{GO_BINARY} version',
            timeout=600,
        )
        if not result.ok or 'go version' not in result.stdout:
            raise OrchestrationError(f'Go安装失败: {result.output[-500:]}')
        ctx.log('success', f'Go安装完成: {result.stdout.strip()}')

    def _install_build_dependencies(self, ctx):
        sudo = ctx.sudo
        if ctx.package_manager == 'apt-get':
            command = f'{sudo}apt-get install -y -qq git build-essential >/dev/null 2>&1 || true'
        else:
            command = f'{sudo}{ctx.package_manager or "yum"} install -y -q git gcc make >/dev/null 2>&1 || true'
        ctx.run(command, timeout=600)

        result = ctx.run('command -v git || echo MISSING', timeout=15)
        if 'MISSING' in result.stdout:
            raise OrchestrationError('构建依赖安装失败: 未找到 git')
        ctx.log('info', '构建依赖已就绪')


class SourceStage(Stage):
    """重新克隆源码（浅克隆失败时回退到完整克隆）并定位源码根目录"""
    name = 'source'
    title = '获取源码'

    def run(self, ctx):
        source = ctx.source
        if not source.repo_url:
            raise OrchestrationError('未配置仓库地址，请先在后台设置部署源')

        src = ctx.path('src')
        repo = shell_quote(source.repo_url)
        branch = shell_quote(source.branch)

        ctx.log('info', f'克隆仓库: {source.repo_url} ({source.branch})')
        ctx.run(f'{ctx.sudo}rm -rf {src}', timeout=60)
        result = ctx.run(f'{ctx.sudo}git clone --depth 1 -b {branch} {repo} {src} 2>&1', timeout=300)
        if not result.ok:
            ctx.log('warning', '浅克隆失败，尝试完整克隆')
            ctx.run(f'{ctx.sudo}rm -rf {src}', timeout=60)
            result = ctx.run(f'{ctx.sudo}git clone -b {branch} {repo} {src} 2>&1', timeout=600)
        if not result.ok:
            raise OrchestrationError(f'克隆仓库失败: {result.output[-500:]}')

        # 仓库可能把真正的源码放在子目录中
        result = ctx.run(
            f'if [ -f {src}/go.mod ] || [ -f {src}/main.go ]; then echo {src}; else '
            f'f=$(find {src} -maxdepth 2 \\( -name go.mod -o -name main.go \\) | head -1); '
            f'if [ -n "$f" ]; then dirname "$f"; else echo {src}; fi; fi',
            timeout=30,
        )
        ctx.source_root = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else f'{ctx.install_path}/src'
        ctx.log('info', f'源码目录: {ctx.source_root}')

        result = ctx.run(
            f'{ctx.sudo}git -c safe.directory="*" -C {shell_quote(ctx.source_root)} rev-parse --short HEAD '
            f'2>/dev/null || echo dev',
            timeout=30,
        )
        ctx.version = result.stdout.strip() or 'dev'
        ctx.log('info', f'版本: {ctx.version}')


class BuildStage(Stage):
    """
    编译二进制

    构建前先删除旧的二进制，构建后文件不存在即判定失败；
    不单独信任退出码。
    """
    name = 'build'
    title = '编译'

    def run(self, ctx):
        binary = ctx.binary
        ctx.run(f'{ctx.sudo}rm -f {binary}', timeout=30)

        ctx.log('info', '开始编译（可能需要几分钟）')
        result = ctx.run(
            f'cd {shell_quote(ctx.source_root)} && '
            f'{ctx.sudo}env PATH={GO_ROOT}/bin:$PATH HOME=/root '
            f'GOCACHE=/tmp/go-build-cache GOMODCACHE=/tmp/go-mod-cache '
            f'{GO_BINARY} build -buildvcs=false -o {binary} . 2>&1',
            timeout=900,
        )
        if result.output:
            ctx.log('info', f'编译输出:\n{result.output[-2000:]}')

        output = result.output.lower()
        marker = next((m for m in BUILD_ERROR_MARKERS if m in output), None)
        if marker:
            raise BuildError(f'编译输出包含错误（{marker}），请查看编译日志')

        check = ctx.run(f'test -f {binary} && echo PRESENT || echo MISSING', timeout=15)
        if 'PRESENT' not in check.stdout:
            raise BuildError('编译失败：未生成二进制文件')
        if not result.ok:
            raise BuildError(f'编译命令退出码 {result.exit_code}')
        ctx.log('success', '二进制编译完成')


class StagingStage(Stage):
    name = 'staging'
    title = '复制资源文件'

    def run(self, ctx):
        root = ctx.source_root
        for directory in ctx.source.asset_dir_list():
            src = shell_quote(f'{root}/{directory}')
            dest = ctx.path(directory)
            ctx.run(
                f'if [ -d {src} ]; then {ctx.sudo}mkdir -p {dest} && {ctx.sudo}cp -r {src}/. {dest}/; '
                f'else echo SKIPPED; fi',
                timeout=120, check=True, error_message=f'复制资源目录失败: {directory}',
            )
        ctx.run(f'{ctx.sudo}chmod +x {ctx.binary}', timeout=15, check=True, error_message='设置执行权限失败')
        ctx.log('info', '资源文件已复制')


class NetworkStage(Stage):
    """释放被本地解析器占用的53端口并固定外部DNS"""
    name = 'network'
    title = '准备网络'

    def run(self, ctx):
        source = ctx.source
        if not source.release_resolver_port:
            ctx.log('info', '未启用释放53端口，跳过网络调整')
            return

        sudo = ctx.sudo
        result = ctx.run(
            f'if systemctl is-active --quiet systemd-resolved; then '
            f'{sudo}systemctl stop systemd-resolved; '
            f'{sudo}systemctl disable systemd-resolved >/dev/null 2>&1 || true; '
            f'echo RELEASED; fi',
            timeout=60,
        )
        if 'RELEASED' in result.stdout:
            ctx.log('info', '已停用 systemd-resolved，53端口已释放')

        servers = source.dns_server_list()
        if servers:
            content = '\n'.join(f'nameserver {server}' for server in servers)
            ctx.run(
                f'{sudo}chattr -i /etc/resolv.conf 2>/dev/null || true; '
                f'{sudo}rm -f /etc/resolv.conf && '
                f'printf "%s\\n" {shell_quote(content)} | {sudo}tee /etc/resolv.conf >/dev/null',
                timeout=30, check=True, error_message='写入 resolv.conf 失败',
            )
            ctx.log('info', f'DNS已固定为: {", ".join(servers)}')


def unit_file(ctx):
    """systemd单元内容：失败后自动重启"""
    args = ctx.source.service_args.format(install_path=ctx.install_path).strip()
    exec_start = f'{ctx.install_path}/{ctx.source.binary_name}'
    if args:
        exec_start = f'{exec_start} {args}'
    return '\n'.join([
        '[Unit]',
        f'Description={ctx.source.service_name} (managed by HostPilot)',
        'After=network-online.target',
        'Wants=network-online.target',
        'StartLimitIntervalSec=0',
        '',
        '[Service]',
        'Type=simple',
        f'WorkingDirectory={ctx.install_path}',
        f'ExecStart={exec_start}',
        'Restart=on-failure',
        'RestartSec=10',
        'LimitNOFILE=65535',
        '',
        '[Install]',
        'WantedBy=multi-user.target',
    ])


class ServiceStage(Stage):
    name = 'service'
    title = '安装并启动服务'

    def run(self, ctx):
        sudo = ctx.sudo
        service = ctx.service
        unit_path = shell_quote(f'/etc/systemd/system/{ctx.source.service_name}.service')

        ctx.run(f'{sudo}systemctl stop {service} 2>/dev/null || true', timeout=60)
        ctx.run(
            f'printf "%s\\n" {shell_quote(unit_file(ctx))} | {sudo}tee {unit_path} >/dev/null '
            f'&& {sudo}systemctl daemon-reload',
            timeout=60, check=True, error_message='写入systemd单元失败',
        )
        ctx.run(f'{sudo}systemctl enable {service} >/dev/null 2>&1 || true', timeout=30)

        result = ctx.run(f'{sudo}systemctl start {service} 2>&1', timeout=60)
        if not result.ok:
            diagnostics = ctx.run(f'{sudo}systemctl status {service} --no-pager -l 2>&1 | head -n 20', timeout=30)
            ctx.log('error', f'服务启动失败:\n{diagnostics.output}')
            raise ServiceStartError(f'服务启动失败: {result.output or diagnostics.output}')
        ctx.log('info', '服务已启动')


class FirewallStage(Stage):
    """按配置开放端口，兼容 ufw / firewalld / iptables，均不存在也不算错误"""
    name = 'firewall'
    title = '配置防火墙'

    def run(self, ctx):
        ports = ctx.source.port_list()
        if not ports:
            ctx.log('info', '未配置需要开放的端口')
            return

        sudo = ctx.sudo
        rules = []
        for port, proto in ports:
            rules.append(
                f'if command -v ufw >/dev/null 2>&1; then {sudo}ufw allow {port}/{proto} >/dev/null 2>&1 || true; fi; '
                f'if command -v firewall-cmd >/dev/null 2>&1; then '
                f'{sudo}firewall-cmd --permanent --add-port={port}/{proto} >/dev/null 2>&1 || true; fi; '
                f'if command -v iptables >/dev/null 2>&1; then '
                f'{sudo}iptables -C INPUT -p {proto} --dport {port} -j ACCEPT 2>/dev/null || '
                f'{sudo}iptables -I INPUT -p {proto} --dport {port} -j ACCEPT 2>/dev/null || true; fi'
            )
        rules.append(f'if command -v firewall-cmd >/dev/null 2>&1; then {sudo}firewall-cmd --reload >/dev/null 2>&1 || true; fi')

        try:
            ctx.run('; '.join(rules), timeout=120)
        except CommandTimeoutError as e:
            ctx.log('warning', f'配置防火墙超时，请手动确认端口已开放: {e}')
            return
        ctx.log('info', f'已开放端口: {", ".join(f"{port}/{proto}" for port, proto in ports)}')


class VerifyStage(Stage):
    """确认服务进入 active 状态，并通过本地控制接口完成首次配置"""
    name = 'verify'
    title = '验证部署'

    def run(self, ctx):
        service = ctx.service
        ctx.sleep(settings.DEPLOYMENT_VERIFY_GRACE_SECONDS)

        attempts = max(settings.DEPLOYMENT_VERIFY_ATTEMPTS, 1)
        state = ''
        for attempt in range(attempts):
            state = ctx.run(f'systemctl is-active {service} 2>/dev/null || true', timeout=15).stdout.strip()
            if state == 'active':
                break
            if attempt < attempts - 1:
                ctx.sleep(1)

        journal = ctx.run(f'{ctx.sudo}journalctl -u {service} --no-pager -n 15 2>&1 || true', timeout=30)
        if state != 'active':
            ctx.log('error', f'服务日志:\n{journal.output}')
            raise ServiceStartError(f'服务未能进入运行状态（当前状态: {state or "unknown"}）')

        ctx.log('success', '服务运行中')
        if journal.output:
            ctx.log('info', f'服务日志:\n{journal.output}')

        if ctx.source.control_port:
            self._configure(ctx)

    def _control_url(self, ctx, path=''):
        return f'http://127.0.0.1:{ctx.source.control_port}{path}'

    def _configure(self, ctx):
        result = ctx.run(
            f'curl -s -o /dev/null -w "%{{http_code}}" --max-time 5 {self._control_url(ctx, "/")} 2>/dev/null || echo 000',
            timeout=15,
        )
        code = result.stdout.strip()[-3:]
        if code in ('', '000'):
            ctx.log('warning', '本地控制接口暂未响应，跳过首次配置')
            return
        ctx.log('info', f'本地控制接口已响应（HTTP {code}）')

        if not ctx.source.configure_on_first_run:
            return

        key = read_callback_key(ctx.manager, ctx.session, ctx.install_path) or ctx.callback_key
        if not key:
            ctx.log('warning', '未找到回调API Key，跳过首次配置')
            return

        result = ctx.run('curl -s --max-time 5 https://api.ipify.org || curl -s --max-time 5 ifconfig.me || true', timeout=15)
        public_ip = result.stdout.strip()

        settings_to_apply = [('autocert', 'true')]
        if public_ip:
            settings_to_apply.append(('external_ipv4', public_ip))
        else:
            ctx.log('warning', '无法获取公网IP，需要手动配置')

        for field, value in settings_to_apply:
            payload = shell_quote(json.dumps({'field': field, 'value': value}))
            result = ctx.run(
                f'curl -s -o /dev/null -w "%{{http_code}}" --max-time 10 -X POST '
                f'-H "Content-Type: application/json" -H {shell_quote(f"Authorization: Bearer {key}")} '
                f'-d {payload} {self._control_url(ctx, "/api/config")} || echo 000',
                timeout=20,
            )
            code = result.stdout.strip()[-3:]
            if code.startswith('2'):
                ctx.log('info', f'已配置 {field}={value}')
            else:
                ctx.log('warning', f'配置 {field} 失败（HTTP {code or "000"}）')


DEFAULT_STAGES = (
    PreflightStage,
    DirectoryStage,
    CredentialStage,
    ToolchainStage,
    SourceStage,
    BuildStage,
    StagingStage,
    NetworkStage,
    ServiceStage,
    FirewallStage,
    VerifyStage,
)
