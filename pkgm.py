#!/usr/bin/env python3
# https://github.com/pkgxdev/pkgm
# https://docs.pkgx.sh/
'''
Install pkgx packages to /usr/local (or ~/.local)
'''
import os
import re  # compile, fullmatch
import sys  # stdout, stderr, executable
import json  # dumps, loads
import stat  # S_ISDIR, S_ISREG, S_ISLNK
import shutil  # rmtree, which
import platform  # machine, system
import subprocess as shell  # pkgx, sudo
from urllib import request as Req  # urlopen
from urllib.error import URLError
from configparser import ConfigParser as IniFile
from functools import total_ordering
from argparse import (
    ArgumentParser, Action,
    Namespace as ArgParams,
    _ActionsContainer as ArgsContainer,
)
from typing import Any, Callable, Iterator, NamedTuple, TypeVar


class Env:
    IS_TTY = sys.stdout.isatty()
    IS_LINUX = platform.system() == 'Linux'
    IS_DARWIN = platform.system() == 'Darwin'
    HOME = os.path.expanduser('~')
    PKGX_DIR = os.environ.get('PKGX_DIR') or os.path.join(HOME, '.pkgx')
    CONFIG_PATH = os.environ.get('PKGM_CONFIG') or \
        os.path.join(HOME, '.config', 'pkgm', 'config.ini')


# the package providing pkgm's own runtime
SELF_PROJECT = 'pkgx.sh'


def main() -> None:
    args = parseArgs()
    Log.LEVEL = 3 if args.verbose else Log.LEVEL - args.quiet
    Config.load(Env.CONFIG_PATH)
    try:
        args.func(args)
    except DelegateFailure as e:
        exit(e.exitCode)
    except PkgmError as e:
        Log.error(e)
        exit(e.exitCode)
    return


# -----------------------------------
#  CLI functions
# -----------------------------------

def cli_install(args: ArgParams) -> None:
    ''' Install packages to /usr/local (asks for sudo if needed). '''
    Installer.install(args.packages, Config.PREFIX.SYSTEM)


def cli_local_install(args: ArgParams) -> None:
    ''' Install packages to ~/.local. '''
    Installer.install(args.packages, Config.PREFIX.LOCAL)


def cli_shim(args: ArgParams) -> None:
    '''
    Write pkgx shebang shims to ~/.local/bin.
    Shims run the package through pkgx, nothing is copied.
    '''
    Stubs.writeShims(args.packages, Config.PREFIX.LOCAL)


def cli_uninstall(args: ArgParams) -> None:
    ''' Remove installed package(s) and all of their files. '''
    for pkg in args.packages:
        Uninstaller.uninstall(pkg)


def cli_list(args: ArgParams) -> None:
    ''' List installed package versions. '''
    for pkg in Scanner.walkInstalled():
        Log.main(pkg.path)


def cli_outdated(args: ArgParams) -> None:
    ''' Show installed packages with a compatible newer version. '''
    Scanner.outdated()


def cli_update(args: ArgParams) -> None:
    '''
    Upgrade outdated packages to the latest compatible version.
    Updates ~/.local first. Run again to update /usr/local.
    '''
    Scanner.update()


def cli_sudo_install(args: ArgParams) -> None:
    ''' Internal. Deploy resolved packages (runs with elevated privileges). '''
    try:
        runtimeEnv = json.loads(args.runtime_env)
    except ValueError as e:
        raise UsageError(f'invalid runtime env: {e}') from e
    if not isinstance(runtimeEnv, dict):
        raise UsageError('invalid runtime env: expected an object')
    Installer.deploy(args.pkgx_dir, args.prefixes, runtimeEnv, args.base_path)


# -----------------------------------
#  CLI
# -----------------------------------

def parseArgs() -> ArgParams:
    cli = Cli(description=__doc__)
    cli.arg_bool('-v', '--verbose', help='increase verbosity')
    cli.arg('-q', '--quiet', action='count', default=0, help='''
        reduce verbosity (-q up to -qqq)''')
    cli.arg('--version', action='version', version='%(prog)s 0.0.0+dev')

    # install
    cmd = cli.subcommand('install', cli_install, aliases=['i'])
    cmd.arg('packages', nargs='*', help='pkgx package spec')

    # local-install
    cmd = cli.subcommand('local-install', cli_local_install, aliases=['li'])
    cmd.arg('packages', nargs='*', help='pkgx package spec')

    # stub
    cmd = cli.subcommand('stub', cli_shim, aliases=['shim'])
    cmd.arg('packages', nargs='*', help='pkgx package spec')

    # uninstall
    cmd = cli.subcommand('uninstall', cli_uninstall, aliases=['rm'])
    cmd.arg('packages', nargs='+', help='project name or binary name')

    # list
    cli.subcommand('list', cli_list, aliases=['ls'])

    # update
    cli.subcommand('update', cli_update, aliases=['up', 'upgrade'])

    # outdated
    cli.subcommand('outdated', cli_outdated)

    # sudo-install
    cmd = cli.subcommand('sudo-install', cli_sudo_install)
    cmd.arg('pkgx_dir', help='pkgx store to mirror from')
    cmd.arg('runtime_env', help='JSON {project: {KEY: VALUE}}')
    cmd.arg('base_path', help='deployment prefix')
    cmd.arg('prefixes', nargs='*', help='<project>/v<version>')

    return cli.parse()


# -----------------------------------
#  Cli Helper
# -----------------------------------

class CliQuickArg(ArgsContainer):
    def arg(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs)

    def arg_bool(self, *args: Any, **kwargs: Any) -> Action:
        return self.add_argument(*args, **kwargs, action='store_true')


class Cli(ArgumentParser, CliQuickArg):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.set_defaults(func=lambda _: self.error('missing command'))

    def subcommand(
        self, name: str, fn: 'Callable[[ArgParams], None]',
        *args: Any, meta: str = 'command', **kwargs: Any
    ) -> 'Cli':
        if not hasattr(self, 'sub_parser'):
            self.sub_parser = self.add_subparsers(metavar=meta, dest=meta)

        desc = fn.__doc__ or ''
        cmd = self.sub_parser.add_parser(
            name, *args, help=desc.strip().split('\n')[0],
            description=desc.strip(), **kwargs)
        cmd.set_defaults(func=fn)
        return cmd

    def parse(self) -> ArgParams:
        return self.parse_args()


# -----------------------------------
#  Errors
# -----------------------------------

class PkgmError(Exception):
    ''' User-facing failure. `main()` prints the message and exits. '''
    exitCode = 1


class UsageError(PkgmError):
    exitCode = 2


class NotFound(PkgmError):
    pass


class NotInstalled(PkgmError):
    pass


class ResolverError(PkgmError):
    pass


class UnsupportedEntryType(PkgmError):
    pass


class DelegateFailure(PkgmError):
    ''' A subprocess failed. Exit with its code, no extra message. '''

    def __init__(self, code: int) -> None:
        super().__init__(f'subprocess exited with code {code}')
        self.exitCode = code


# -----------------------------------
#  Config
# -----------------------------------

class Config:
    class Prefix(NamedTuple):
        SYSTEM: str
        LOCAL: str

    class Resolver(NamedTuple):
        EXECUTABLE: str
        INVENTORY: str

    PREFIX = Prefix('/usr/local', os.path.join(Env.HOME, '.local'))
    RESOLVER = Resolver('', 'https://dist.pkgx.dev')

    @staticmethod
    def load(fname: str) -> None:
        ''' Read optional ini file. A missing file keeps the defaults. '''
        ini = IniFile(inline_comment_prefixes=(';', '#'))
        ini.read(fname)

        def path(section: str, key: str, fallback: str) -> str:
            value = ini.get(section, key, fallback='') or fallback
            return os.path.abspath(os.path.expanduser(value))

        Config.PREFIX = Config.Prefix(
            SYSTEM=path('prefix', 'system', Config.PREFIX.SYSTEM),
            LOCAL=path('prefix', 'local', Config.PREFIX.LOCAL),
        )
        exe = ini.get('resolver', 'executable', fallback='')
        Config.RESOLVER = Config.Resolver(
            EXECUTABLE=os.path.expanduser(exe) if exe else '',
            INVENTORY=(ini.get('resolver', 'inventory', fallback='')
                       or Config.RESOLVER.INVENTORY).rstrip('/'),
        )


# -----------------------------------
#  Versions
# -----------------------------------

@total_ordering
class SemVer:
    PATTERN = re.compile(
        r'v?(\d+(?:\.\d+)*)(?:-([0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?')

    def __init__(self, raw: str) -> None:
        match = SemVer.PATTERN.fullmatch(raw.strip())
        if not match:
            raise ValueError(f'invalid version "{raw}"')
        self.raw = raw.strip()[1:] if raw.strip()[0] == 'v' else raw.strip()
        self.components = tuple(int(x) for x in match.group(1).split('.'))
        self.prerelease = match.group(2) or ''

    @staticmethod
    def parse(raw: str) -> 'SemVer|None':
        ''' Returns `None` if `raw` is not a version '''
        try:
            return SemVer(raw)
        except ValueError:
            return None

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f'<SemVer {self.raw}>'

    def _padded(self) -> tuple[int, ...]:
        comps = list(self.components) + [0] * (3 - len(self.components))
        while len(comps) > 3 and comps[-1] == 0:
            comps.pop()
        return tuple(comps)

    def _key(self) -> tuple[Any, ...]:
        # release sorts after its prereleases
        return (self._padded(), not self.prerelease, self.prerelease)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._key() == other._key()

    def __lt__(self, other: 'SemVer') -> bool:
        return self._key() < other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    @property
    def major(self) -> int:
        return self._padded()[0]

    @property
    def minor(self) -> int:
        return self._padded()[1]

    @property
    def patch(self) -> int:
        return self._padded()[2]

    @property
    def marketing(self) -> str:
        return f'{self.major}.{self.minor}'


class Range:
    ''' Version constraint, e.g. `^1.2`, `~1.2.3`, `>=1.2<1.4`, `=2 || ^3` '''
    COMPARATOR = re.compile(r'(>=|<=|>|<|=)\s*([^\s,<>=|]+)')

    def __init__(self, raw: str) -> None:
        self.raw = raw.strip()
        self.alternatives = [Range._parseSet(x) for x in self.raw.split('||')]

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f'<Range {self.raw}>'

    @staticmethod
    def caret(version: SemVer) -> 'Range':
        ''' Compatible with `version` (same major, or minor if major is 0) '''
        return Range(f'^{version}')

    @staticmethod
    def _parseSet(text: str) -> list[tuple[str, SemVer]]:
        text = text.strip()
        if text in ('', '*'):
            return []
        if text[0] in '^~':
            lower = SemVer(text[1:])
            return [('>=', lower), ('<', Range._upperBound(lower, text[0]))]
        if exact := SemVer.parse(text):
            return [('==', exact)]
        rv = []
        for op, ver in Range.COMPARATOR.findall(text):
            rv.append(('==' if op == '=' else op, SemVer(ver)))
        if not rv:
            raise ValueError(f'invalid range "{text}"')
        return rv

    @staticmethod
    def _upperBound(lower: SemVer, op: str) -> SemVer:
        comps = list(lower.components)
        if op == '~':
            idx = min(1, len(comps) - 1)
        else:
            nonzero = [i for i, x in enumerate(comps) if x != 0]
            idx = nonzero[0] if nonzero else len(comps) - 1
        upper = comps[:idx] + [comps[idx] + 1]
        upper += [0] * (3 - len(upper))
        return SemVer('.'.join(str(x) for x in upper))

    def satisfies(self, version: SemVer) -> bool:
        return any(
            all(Utils.cmpVersion(version, op, bound) for op, bound in clauses)
            for clauses in self.alternatives)


class Installation(NamedTuple):
    project: str
    version: SemVer
    path: str  # absolute

    @property
    def prefix(self) -> str:
        ''' Returns `<project>/v<version>` '''
        return f'{self.project}/v{self.version}'


# -----------------------------------
#  Deployment roots
# -----------------------------------

class Prefixes:
    OVERLAY_DIRS = (
        'bin', 'sbin', 'share', 'lib', 'libexec', 'var', 'etc', 'ssl')

    @staticmethod
    def roots() -> list[str]:
        ''' System root first, then user-local root '''
        return [Config.PREFIX.SYSTEM, Config.PREFIX.LOCAL]

    @staticmethod
    def storeRoot(root: str) -> str:
        ''' Returns `<root>/pkgs` '''
        return os.path.join(root, 'pkgs')

    @staticmethod
    def isUnder(path: str, root: str) -> bool:
        return path == root or path.startswith(root.rstrip('/') + '/')

    @staticmethod
    def projectOf(path: str, root: str) -> 'str|None':
        ''' `<root>/pkgs/<project>/v<version>/...` -> `<project>` '''
        storeRoot = Prefixes.storeRoot(root)
        if not Prefixes.isUnder(path, storeRoot):
            return None
        parts = os.path.relpath(path, storeRoot).split(os.sep)
        for idx, part in enumerate(parts):
            if idx > 0 and part.startswith('v') and SemVer.parse(part):
                return '/'.join(parts[:idx])
        return None


# -----------------------------------
#  Resolver
# -----------------------------------

class Resolution(NamedTuple):
    pkgs: list[Installation]
    env: dict[str, dict[str, str]]
    runtimeEnv: dict[str, dict[str, str]]


class Resolver:
    @staticmethod
    def standardPath() -> str:
        ''' System PATH plus homebrew (where pkgx may be installed) '''
        path = '/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin'
        homebrew = ''
        if Env.IS_DARWIN:
            homebrew = '/opt/homebrew'  # /usr/local is already in the path
        elif Env.IS_LINUX:
            homebrew = f'/home/linuxbrew/.linuxbrew:{Env.HOME}/.linuxbrew'
        if homebrew:
            homebrew = os.environ.get('HOMEBREW_PREFIX') or homebrew
            path = f'{homebrew}/bin:{path}'
        return path

    @staticmethod
    def environment() -> dict[str, str]:
        ''' Explicit environment for subprocesses. Never inherit ambient. '''
        env = {'PATH': Resolver.standardPath()}
        for key in ('HOME', 'PKGX_DIR'):
            if value := os.environ.get(key):
                env[key] = value
        return env

    @staticmethod
    def executable() -> str:
        if Config.RESOLVER.EXECUTABLE:
            return Config.RESOLVER.EXECUTABLE
        if pkgx := shutil.which('pkgx'):
            return pkgx
        raise PkgmError('no `pkgx` found in `$PATH`')

    @staticmethod
    def run(args: list[str]) -> Any:
        ''' Run resolver in json mode and return the parsed response '''
        cmd = [Resolver.executable(), *args, '--json=v1']
        Log.debug('run', *cmd)
        rv = shell.run(cmd, stdout=shell.PIPE, env=Resolver.environment())
        if rv.returncode != 0:
            raise DelegateFailure(rv.returncode)
        try:
            return json.loads(rv.stdout)
        except ValueError as e:
            raise ResolverError(f'malformed resolver output: {e}') from e

    @staticmethod
    def query(specs: list[str]) -> Resolution:
        ''' Resolve package specs into an installation plan '''
        data = Resolver.run([f'+{x}' for x in specs])
        try:
            pkgs = [Installation(x['project'], SemVer(x['version']), x['path'])
                    for x in data['pkgs']]
            env = data.get('env') or {}
            runtimeEnv = data.get('runtime_env') or {}
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ResolverError(f'malformed resolver output: {e!r}') from e
        if not isinstance(env, dict) or not isinstance(runtimeEnv, dict):
            raise ResolverError('malformed resolver output: env is not a map')
        return Resolution(pkgs, env, runtimeEnv)

    @staticmethod
    def hydrate(constraints: list[tuple[str, Range]]) -> dict[str, Range]:
        '''
        Effective version range per project (incl. transitive deps).
        Needs a resolver with `--hydrate` support, answering
        `{"graph": [{"project": ..., "constraint": ...}]}`.
        Only `outdated` and `update` use it.
        '''
        data = Resolver.run(
            ['--hydrate'] + [f'+{project}{rng}' for project, rng in constraints])
        try:
            return {x['project']: Range(x['constraint'])
                    for x in data['graph']}
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ResolverError(f'malformed resolver output: {e!r}') from e


# -----------------------------------
#  Privilege
# -----------------------------------

class Privilege:
    SUDO = '/usr/bin/sudo'

    @staticmethod
    def writable(path: str) -> bool:
        ''' Try to create (and remove) a probe directory in `path` '''
        probe = os.path.join(path, '.writable_test')
        try:
            os.makedirs(probe, exist_ok=True)
            os.rmdir(probe)
            return True
        except OSError:
            return False

    @staticmethod
    def needsElevation(root: str) -> bool:
        ''' Only the protected system root is ever elevated '''
        return root == Config.PREFIX.SYSTEM and not Privilege.writable(root)

    @staticmethod
    def run(args: list[str], *, quiet: bool = False) -> int:
        ''' Run `args` with sudo (blocking). Returns exit code. '''
        Log.debug('sudo', *args)
        rv = shell.run([Privilege.SUDO, *args],
                       env={'PATH': Resolver.standardPath()},
                       stderr=shell.DEVNULL if quiet else None)
        return rv.returncode

    @staticmethod
    def deployCommand(
        pkgxDir: str, runtimeEnv: dict[str, dict[str, str]],
        basePath: str, prefixes: list[str],
    ) -> list[str]:
        ''' Re-invoke ourself as `sudo-install` with a cleared environment '''
        return [
            '/usr/bin/env', '-i', f'PATH={Resolver.standardPath()}',
            sys.executable, '-I', os.path.abspath(__file__),
            'sudo-install', pkgxDir, json.dumps(runtimeEnv), basePath,
            *prefixes,
        ]


# -----------------------------------
#  Installer
# -----------------------------------

class Installer:
    @staticmethod
    def install(specs: list[str], basePath: str) -> None:
        ''' Resolve `specs` and deploy them into `basePath` '''
        if not specs:
            raise PkgmError('no packages specified')

        resolution = Resolver.query(specs)
        prefixes = [x.prefix for x in resolution.pkgs]
        runtimeEnv = Stubs.expandRuntimeEnv(
            resolution.runtimeEnv, resolution.pkgs, basePath)

        if Privilege.needsElevation(basePath):
            Log.info('==> Elevating privileges to write', basePath)
            code = Privilege.run(Privilege.deployCommand(
                Env.PKGX_DIR, runtimeEnv, basePath, prefixes))
            if code != 0:
                raise DelegateFailure(code)
        else:
            Installer.deploy(Env.PKGX_DIR, prefixes, runtimeEnv, basePath)

    @staticmethod
    def deploy(
        pkgxDir: str, prefixes: list[str],
        runtimeEnv: dict[str, dict[str, str]], basePath: str,
    ) -> None:
        ''' Mirror, overlay, alias and stub. Safe to re-run. '''
        basePath = os.path.abspath(basePath)
        storeRoot = Prefixes.storeRoot(basePath)

        Log.beginCounter(len(prefixes))
        for prefix in prefixes:
            Log.info('install', prefix, count=True)
            Mirror.mirror(storeRoot, pkgxDir, prefix)
            pkgDir = os.path.join(storeRoot, prefix)
            # don't overwrite ourselves while running
            if not prefix.startswith(f'{SELF_PROJECT}/v'):
                Farm.overlay(pkgDir, basePath)
            Shelf.refreshMajorAliases(pkgDir)
        Log.endCounter()

        Stubs.writeStubs(storeRoot, prefixes, runtimeEnv, basePath)


# -----------------------------------
#  Mirror
# -----------------------------------

class Mirror:
    @staticmethod
    def mirror(dstRoot: str, srcRoot: str, prefix: str) -> None:
        ''' Hardlink-copy `<srcRoot>/<prefix>` to `<dstRoot>/<prefix>` '''
        src = os.path.join(srcRoot, prefix)
        if not os.path.isdir(src):
            raise PkgmError(f'not found in pkgx store: {src}')
        queue = [(src, os.path.join(dstRoot, prefix))]
        while queue:
            src, dst = queue.pop()
            mode = os.lstat(src).st_mode
            if stat.S_ISDIR(mode):
                os.makedirs(dst, exist_ok=True)
                for entry in os.scandir(src):
                    queue.append((entry.path, os.path.join(dst, entry.name)))
            elif stat.S_ISREG(mode):
                File.hardlink(src, dst)
            elif stat.S_ISLNK(mode):
                File.symlink(os.readlink(src), dst)
            else:
                raise UnsupportedEntryType(f'unsupported file type at: {src}')


# -----------------------------------
#  Symlink farm
# -----------------------------------

class Farm:
    @staticmethod
    def overlay(pkgDir: str, dst: str) -> None:
        ''' Symlink leaves of `<pkgDir>/{bin,lib,...}` into `<dst>/...` '''
        for base in Prefixes.OVERLAY_DIRS:
            src = os.path.join(pkgDir, base)
            if not os.path.exists(src):
                continue
            queue = [(src, os.path.join(dst, base))]
            while queue:
                source, target = queue.pop()
                if os.path.isdir(source) and not os.path.islink(source):
                    os.makedirs(target, exist_ok=True)
                    for entry in os.scandir(source):
                        queue.append(
                            (entry.path, os.path.join(target, entry.name)))
                else:
                    File.symlink(source, target)


# -----------------------------------
#  Shelf
# -----------------------------------

class Shelf:
    @staticmethod
    def versions(shelf: str) -> Iterator[tuple[SemVer, str]]:
        ''' Real version directories of a project (no alias links) '''
        for entry in os.scandir(shelf):
            if entry.is_symlink() or not entry.is_dir():
                continue
            if not entry.name.startswith('v') or entry.name == 'var':
                continue
            if version := SemVer.parse(entry.name):
                yield version, entry.name

    # TODO: only major aliases (v1), no major.minor (v1.2) yet
    @staticmethod
    def refreshMajorAliases(versionDir: str) -> None:
        ''' Point `v<major>` at the latest installed version of that major '''
        shelf = os.path.dirname(versionDir)

        latest = {}  # type: dict[int, tuple[SemVer, str]]
        for version, name in Shelf.versions(shelf):
            if version.major not in latest or version > latest[version.major][0]:
                latest[version.major] = (version, name)

        for major, (_, name) in sorted(latest.items()):
            alias = os.path.join(shelf, f'v{major}')
            if name == f'v{major}':
                continue  # version dir is its own alias
            if os.path.isdir(alias) and not os.path.islink(alias):
                Log.debug('skip alias, real directory exists:', alias)
                continue
            File.symlink(name, alias)


# -----------------------------------
#  Environment stubs
# -----------------------------------

class Moustaches:
    @staticmethod
    def tokenize(pkg: Installation, pkgs: list[Installation]) \
            -> dict[str, str]:
        ''' All `{{...}}` replacements available to `pkg` '''
        def versionTokens(prefix: str, ver: SemVer) -> dict[str, str]:
            return {
                f'{prefix}version': str(ver),
                f'{prefix}version.major': str(ver.major),
                f'{prefix}version.minor': str(ver.minor),
                f'{prefix}version.patch': str(ver.patch),
                f'{prefix}version.marketing': ver.marketing,
            }

        osName, arch = Inventory.platform()
        rv = {
            'home': Env.HOME,
            'prefix': pkg.path,
            'hw.arch': arch,
            'hw.platform': osName,
            'hw.target': f'{arch}-{osName}',
            'hw.concurrency': str(os.cpu_count() or 1),
        }
        rv.update(versionTokens('', pkg.version))
        for dep in pkgs:
            rv[f'deps.{dep.project}.prefix'] = dep.path
            rv.update(versionTokens(f'deps.{dep.project}.', dep.version))
        return rv

    @staticmethod
    def apply(value: str, tokens: dict[str, str]) -> str:
        def replace(match: 're.Match[str]') -> str:
            return tokens.get(match.group(1), match.group(0))
        return re.sub(r'{{\s*([^{}\s]+)\s*}}', replace, value)


class Stubs:
    @staticmethod
    def mergeEnv(
        runtimeEnv: dict[str, dict[str, str]], pkgs: list[Installation],
        basePath: str,
    ) -> dict[str, str]:
        ''' Combine runtime env of all packages into a single env '''
        expanded = {}  # type: dict[str, dict[str, None]]  # ordered set
        for project, env in runtimeEnv.items():
            pkg = next((x for x in pkgs if x.project == project), None)
            if not pkg:
                Log.warn('ignore runtime env of unknown package:', project)
                continue
            tokens = Moustaches.tokenize(pkg, pkgs)
            for key, value in env.items():
                expanded.setdefault(key, {})[
                    Moustaches.apply(value, tokens)] = None

        # binaries without rpath won't find libs in <prefix>/lib otherwise
        if Env.IS_LINUX:
            expanded.setdefault('LD_LIBRARY_PATH', {})[f'{basePath}/lib'] = None

        return {key: ':'.join(values) for key, values in expanded.items()}

    @staticmethod
    def expandRuntimeEnv(
        runtimeEnv: dict[str, dict[str, str]], pkgs: list[Installation],
        basePath: str,
    ) -> dict[str, dict[str, str]]:
        '''
        Same merged env for every package. Overkill for transitive deps
        that don't need it, but simple and predictable.
        '''
        merged = Stubs.mergeEnv(runtimeEnv, pkgs, basePath)
        return {pkg.project: merged for pkg in pkgs}

    @staticmethod
    def stubScript(exePath: str, env: dict[str, str]) -> str:
        sh = '#!/bin/sh\n'
        for key, value in env.items():
            sh += f'export {key}="{value}"\n'
        sh += f'exec "{exePath}" "$@"\n'
        return sh

    @staticmethod
    def writeStub(exePath: str, env: dict[str, str], stubPath: str) -> None:
        ''' Replace `stubPath` with a script exporting `env` '''
        File.writeExecutable(stubPath, Stubs.stubScript(exePath, env))

    @staticmethod
    def writeStubs(
        storeRoot: str, prefixes: list[str],
        runtimeEnv: dict[str, dict[str, str]], basePath: str,
    ) -> None:
        ''' Replace `@/bin/...` links with env-injecting stubs '''
        for project, env in runtimeEnv.items():
            if project == SELF_PROJECT:
                continue
            prefix = next(
                (x for x in prefixes if x.startswith(f'{project}/v')), None)
            if not prefix:
                continue

            for binDir in ('bin', 'sbin'):
                binPrefix = os.path.join(storeRoot, prefix, binDir)
                if not os.path.isdir(binPrefix):
                    continue
                for entry in os.scandir(binPrefix):
                    if not entry.is_file(follow_symlinks=False):
                        continue
                    stubPath = os.path.join(basePath, binDir, entry.name)
                    Log.debug('  stub', stubPath)
                    Stubs.writeStub(entry.path, env, stubPath)

    @staticmethod
    def shimScript(pkg: Installation, name: str, pkgx: str) -> str:
        if Env.IS_DARWIN and pkgx == '/usr/local/bin/pkgx':
            interpreter = '/usr/local/bin/pkgx'
        else:
            interpreter = '/usr/bin/env -S pkgx'
        return (f'#!{interpreter} --shebang --quiet '
                f'+{pkg.project}={pkg.version} -- {name} "$@"\n')

    @staticmethod
    def writeShims(specs: list[str], basePath: str) -> None:
        ''' pkgx v1 behavior: shebang shims which run through pkgx '''
        if not specs:
            raise PkgmError('no packages specified')
        pkgx = Resolver.executable()
        os.makedirs(os.path.join(basePath, 'bin'), exist_ok=True)

        for pkg in Resolver.query(specs).pkgs:
            for binDir in ('bin', 'sbin'):
                binPrefix = os.path.join(pkg.path, binDir)
                if not os.path.isdir(binPrefix):
                    continue
                for entry in os.scandir(binPrefix):
                    if not (entry.is_file() or entry.is_symlink()):
                        continue
                    shimPath = os.path.join(basePath, 'bin', entry.name)
                    Log.info('  shim', shimPath)
                    File.writeExecutable(
                        shimPath, Stubs.shimScript(pkg, entry.name, pkgx))


# -----------------------------------
#  Uninstaller
# -----------------------------------

class Pantry:
    @staticmethod
    def find(name: str) -> 'str|None':
        ''' Exact project name in any store '''
        if not name or name.startswith(('/', '.')) or '..' in name.split('/'):
            return None
        stores = [Prefixes.storeRoot(x) for x in Prefixes.roots()]
        for store in stores + [Env.PKGX_DIR]:
            path = os.path.join(store, name)
            if os.path.isdir(path) and not os.path.islink(path):
                return name
        return None

    @staticmethod
    def which(name: str) -> 'str|None':
        ''' Project which provides the installed binary `name` '''
        if not name or '/' in name:
            return None
        for root in Prefixes.roots():
            for binDir in ('bin', 'sbin'):
                path = os.path.join(root, binDir, name)
                if os.path.islink(path):
                    target = os.path.normpath(os.path.join(
                        os.path.dirname(path), os.readlink(path)))
                    if project := Prefixes.projectOf(target, root):
                        return project
                elif os.path.isfile(path):
                    if project := Pantry._stubProject(path, root):
                        return project
        return None

    @staticmethod
    def _stubProject(path: str, root: str) -> 'str|None':
        ''' Read `exec "<root>/pkgs/..."` line of a generated stub '''
        try:
            with open(path) as fp:
                head = fp.read(4096)
        except (OSError, UnicodeDecodeError):
            return None
        if match := re.search(r'^exec "([^"]+)" "\$@"$', head, re.MULTILINE):
            return Prefixes.projectOf(match.group(1), root)
        return None


class Uninstaller:
    @staticmethod
    def findProject(arg: str) -> str:
        ''' Resolve user input to project name. Raise `NotFound` otherwise '''
        found = Pantry.find(arg) or Pantry.which(arg)
        if not found:
            raise NotFound(f'pkg not found: {arg}')
        return found

    @staticmethod
    def collect(project: str) -> tuple[list[str], list[str], list[str]]:
        ''' Returns live `(files, dirs, pkgDirs)` owned by `project` '''
        seen = set()  # type: set[str]
        files = []  # type: list[str]
        dirs = []  # type: list[str]
        pkgDirs = []  # type: list[str]

        for root in Prefixes.roots():
            pkgDir = os.path.join(Prefixes.storeRoot(root), project)
            if not os.path.isdir(pkgDir) or os.path.islink(pkgDir):
                continue
            pkgDirs.append(pkgDir)
            for verDir in os.scandir(pkgDir):
                if verDir.is_symlink() or not verDir.is_dir():
                    continue
                for rel, isDir in File.walk(verDir.path):
                    if rel.split(os.sep)[0] not in Prefixes.OVERLAY_DIRS:
                        continue
                    live = os.path.join(root, rel)
                    if live in seen or not os.path.lexists(live):
                        continue
                    seen.add(live)
                    if isDir:
                        dirs.append(live)
                    elif Uninstaller._ownedByOther(live, root, project):
                        Log.debug('skip, owned by other package:', live)
                    else:
                        files.append(live)

        # delete hierarchically, children before parents
        dirs.sort(reverse=True)
        return files, dirs, pkgDirs

    @staticmethod
    def _ownedByOther(live: str, root: str, project: str) -> bool:
        ''' Link into (or stub of) another package with the same file name '''
        if os.path.islink(live):
            target = os.path.join(os.path.dirname(live), os.readlink(live))
            owner = Prefixes.projectOf(os.path.normpath(target), root)
        elif os.path.isfile(live):
            owner = Pantry._stubProject(live, root)
        else:
            return False
        return owner is not None and owner != project

    @staticmethod
    def storeParents(pkgDirs: list[str]) -> list[str]:
        ''' Dirs between `<root>/pkgs/<project>` and `<root>/pkgs` '''
        rv = set()  # type: set[str]
        for pkgDir in pkgDirs:
            root = next(x for x in Prefixes.roots()
                        if Prefixes.isUnder(pkgDir, Prefixes.storeRoot(x)))
            storeRoot = Prefixes.storeRoot(root)
            path = os.path.dirname(pkgDir)
            while Prefixes.isUnder(path, storeRoot):
                rv.add(path)
                path = os.path.dirname(path)
        return sorted(rv, reverse=True)

    @staticmethod
    def uninstall(arg: str) -> None:
        ''' Remove all live files of a package (from all roots) '''
        project = Uninstaller.findProject(arg)
        files, dirs, pkgDirs = Uninstaller.collect(project)
        if not files:
            raise NotInstalled('not installed')

        parents = Uninstaller.storeParents(pkgDirs)
        system = Config.PREFIX.SYSTEM
        Log.info('==> Uninstall', project)

        if any(Prefixes.isUnder(x, system) for x in files) \
                and Privilege.needsElevation(system):
            Uninstaller._removeElevated(files, dirs, pkgDirs, parents)
        else:
            Uninstaller._remove(files, dirs, pkgDirs, parents)
        Log.info('removed', len(files), 'files')

    @staticmethod
    def _removeElevated(
        files: list[str], dirs: list[str], pkgDirs: list[str],
        parents: list[str],
    ) -> None:
        code = Privilege.run(['rm', *files])
        if code != 0:
            raise DelegateFailure(code)
        # shared dirs (e.g. bin) will not be removable
        if dirs:
            Privilege.run(['rmdir', *dirs], quiet=True)
        code = Privilege.run(['rm', '-rf', *pkgDirs])
        if code != 0:
            raise DelegateFailure(code)
        if parents:
            Privilege.run(['rmdir', *parents], quiet=True)

    @staticmethod
    def _remove(
        files: list[str], dirs: list[str], pkgDirs: list[str],
        parents: list[str],
    ) -> None:
        for path in files:
            if os.path.isdir(path) and not os.path.islink(path):
                continue
            Log.debug('  rm', path)
            os.remove(path)
        File.removeDirs(dirs)
        for pkgDir in pkgDirs:
            Log.debug('  rm -rf', pkgDir)
            shutil.rmtree(pkgDir)
        File.removeDirs(parents)


# -----------------------------------
#  Scanner
# -----------------------------------

class Upgrade(NamedTuple):
    pkg: Installation
    version: SemVer

    @property
    def spec(self) -> str:
        return f'{self.pkg.project}={self.version}'


class Scanner:
    @staticmethod
    def walkInstalled() -> list[Installation]:
        ''' All `<root>/pkgs/<project>/v<version>` dirs of both roots '''
        rv = []
        for root in Prefixes.roots():
            storeRoot = Prefixes.storeRoot(root)
            queue = [storeRoot]
            while queue:
                path = queue.pop()
                if not os.path.isdir(path):
                    continue
                for entry in os.scandir(path):
                    if entry.is_symlink() or not entry.is_dir():
                        continue
                    version = None
                    if entry.name.startswith('v'):
                        version = SemVer.parse(entry.name)
                    if version and path != storeRoot:
                        project = os.path.relpath(path, storeRoot)
                        rv.append(Installation(project, version, entry.path))
                    else:
                        queue.append(entry.path)
        return sorted(rv, key=lambda x: (x.project, x.version, x.path))

    @staticmethod
    def pendingUpgrades() -> list[Upgrade]:
        ''' Latest version compatible with installed deps, per package '''
        pkgs = Scanner.walkInstalled()
        if not pkgs:
            return []
        graph = Resolver.hydrate(
            [(x.project, Range.caret(x.version)) for x in pkgs])

        rv = []
        for pkg in pkgs:
            allowed = graph.get(pkg.project) or Range.caret(pkg.version)
            candidates = [v for v in Inventory.versions(pkg.project)
                          if allowed.satisfies(v) and v > pkg.version]
            if candidates:
                rv.append(Upgrade(pkg, max(candidates)))
        return rv

    @staticmethod
    def outdated() -> list[Upgrade]:
        ''' Print (and return) packages with pending upgrades '''
        upgrades = Scanner.pendingUpgrades()
        for up in upgrades:
            Log.main(up.pkg.project, 'is outdated', up.pkg.version, '<',
                     up.version, Txt.dim(up.pkg.path))
        if not upgrades:
            Log.info('all packages are up to date')
        return upgrades

    @staticmethod
    def update() -> None:
        ''' Re-install outdated packages. Local root first, then system. '''
        system = Config.PREFIX.SYSTEM
        localList = []  # type: list[Upgrade]
        systemList = []  # type: list[Upgrade]
        for up in Scanner.pendingUpgrades():
            if Prefixes.isUnder(up.pkg.path, system):
                systemList.append(up)
            else:
                localList.append(up)

        for root, queue in ((Config.PREFIX.LOCAL, localList),
                            (system, systemList)):
            for up in queue:
                Log.info('updating:', os.path.join(
                    Prefixes.storeRoot(root), up.pkg.project), 'to', up.version)

        if localList:
            Installer.install([x.spec for x in localList], Config.PREFIX.LOCAL)
            if systemList:
                Log.info('run update again to update', system)
        elif systemList:
            Installer.install([x.spec for x in systemList], system)
        else:
            Log.info('all packages are up to date')


# -----------------------------------
#  Inventory
# -----------------------------------

class Inventory:
    _CACHE = {}  # type: dict[str, list[SemVer]]

    @staticmethod
    def platform() -> tuple[str, str]:
        ''' Returns `(os, arch)` as used by the pkgx dist server '''
        osName = 'darwin' if Env.IS_DARWIN else 'linux'
        isArm = platform.machine().lower() in ('arm64', 'aarch64')
        return osName, 'aarch64' if isArm else 'x86-64'

    @staticmethod
    def versions(project: str) -> list[SemVer]:
        ''' All available versions of `project` (sorted, cached) '''
        if project not in Inventory._CACHE:
            osName, arch = Inventory.platform()
            url = '{}/{}/{}/{}/versions.txt'.format(
                Config.RESOLVER.INVENTORY, project, osName, arch)
            Inventory._CACHE[project] = sorted(
                v for line in Curl.text(url).split()
                if (v := SemVer.parse(line)))
        return Inventory._CACHE[project]


# -----------------------------------
#  Utils
# -----------------------------------

class File:
    @staticmethod
    def _tempName(dst: str) -> str:
        ''' Hidden sibling used for atomic replace '''
        return os.path.join(
            os.path.dirname(dst), f'.{os.path.basename(dst)}.pkgm~')

    @staticmethod
    def _prepareTemp(dst: str) -> str:
        ''' Returns temp path, removes leftovers of an interrupted run '''
        tmp = File._tempName(dst)
        if os.path.lexists(tmp):
            os.remove(tmp)
        return tmp

    @staticmethod
    def replace(tmp: str, dst: str) -> None:
        '''
        Atomically move `tmp` to `dst`. There is no moment where `dst` is
        missing, except if `dst` is an (empty) real directory.
        '''
        if os.path.isdir(dst) and not os.path.islink(dst):
            os.rmdir(dst)  # raises if not empty
        os.replace(tmp, dst)
        # rename() is a no-op if both are hardlinks of the same inode
        if os.path.lexists(tmp):
            os.remove(tmp)

    @staticmethod
    def hardlink(src: str, dst: str) -> None:
        ''' Make `dst` a hardlink of `src` (skip if already) '''
        if os.path.lexists(dst) and \
                os.path.samestat(os.lstat(src), os.lstat(dst)):
            return
        tmp = File._prepareTemp(dst)
        os.link(src, tmp)
        File.replace(tmp, dst)

    @staticmethod
    def symlink(target: str, dst: str) -> None:
        ''' Make `dst` a symlink pointing to `target` (skip if already) '''
        if os.path.islink(dst) and os.readlink(dst) == target:
            return
        tmp = File._prepareTemp(dst)
        os.symlink(target, tmp)
        File.replace(tmp, dst)

    @staticmethod
    def writeExecutable(dst: str, content: str) -> None:
        ''' Replace `dst` with a new file (mode 755). Never writes through. '''
        os.makedirs(os.path.dirname(dst), exist_ok=True)
        tmp = File._prepareTemp(dst)
        with open(tmp, 'w') as fp:
            fp.write(content)
        os.chmod(tmp, 0o755)
        File.replace(tmp, dst)

    @staticmethod
    def walk(path: str) -> Iterator[tuple[str, bool]]:
        ''' Yield `(relpath, isDir)` for everything below `path` '''
        queue = [path]
        while queue:
            current = queue.pop()
            for entry in os.scandir(current):
                isDir = entry.is_dir(follow_symlinks=False)
                yield os.path.relpath(entry.path, path), isDir
                if isDir:
                    queue.append(entry.path)

    @staticmethod
    def removeDirs(dirs: list[str]) -> None:
        ''' Remove dirs if empty. Non-empty dirs are silently kept. '''
        for path in dirs:
            try:
                os.rmdir(path)
            except OSError:
                pass  # shared with other packages (e.g. bin)


class Txt:
    ''' They all return strings '''
    @staticmethod
    def dim(text: str) -> str:
        return f'\033[2m{text}\033[22m' if Env.IS_TTY else text


class Utils:
    Version = TypeVar('Version', int, str, list[int], SemVer)

    @staticmethod
    def cmpVersion(left: Version, op: str, right: Version) -> bool:
        '''Convert `op` string to mathematical operation (<=, >=, <, >, ==)'''
        if op == '<=':
            return left <= right
        if op == '>=':
            return left >= right
        if op == '<':
            return left < right
        if op == '>':
            return left > right
        if op == '==':
            return left == right
        raise ArithmeticError(f'unknown op "{op}"')


# -----------------------------------
#  Curl
# -----------------------------------

class Curl:
    @staticmethod
    def text(url: str) -> str:
        ''' Download and decode text file '''
        Log.debug('GET', url)
        try:
            with Req.urlopen(url) as fp:
                return fp.read().decode('utf8')
        except URLError as e:
            raise PkgmError(f'could not download {url} ({e})') from e


# -----------------------------------
#  Logger
# -----------------------------------

class Log:
    LEVEL = 2  # 0: error, 1: warn, 2: info, 3: debug
    _COUNT = 0
    _COUNT_TOTAL = 0

    @staticmethod
    def _log(lvl: int, *msg: Any, count: bool = False, **kwargs: Any) -> None:
        if Log.LEVEL >= lvl:
            if count and Log._COUNT_TOTAL:
                Log._COUNT += 1
                print(f'[{Log._COUNT}/{Log._COUNT_TOTAL}]', *msg, **kwargs)
            else:
                print(*msg, **kwargs)

    @staticmethod
    def error(*msg: Any, **kwargs: Any) -> None:
        start = '\033[31m' if Env.IS_TTY else ''
        end = '\033[0m' if Env.IS_TTY else ''
        kwargs['file'] = sys.stderr
        Log._log(0, f'{start}ERROR:', *msg, end, **kwargs)

    @staticmethod
    def main(*msg: Any, **kwargs: Any) -> None:
        Log._log(0, *msg, **kwargs)

    @staticmethod
    def warn(*msg: Any, **kwargs: Any) -> None:
        Log._log(1, '[WARN]', *msg, **kwargs)

    @staticmethod
    def info(*msg: Any, **kwargs: Any) -> None:
        Log._log(2, *msg, **kwargs)

    @staticmethod
    def debug(*msg: Any, **kwargs: Any) -> None:
        Log._log(3, *msg, **kwargs)

    # counter

    @staticmethod
    def beginCounter(total: int) -> None:
        Log._COUNT = 0
        Log._COUNT_TOTAL = total

    @staticmethod
    def endCounter() -> None:
        Log._COUNT = 0
        Log._COUNT_TOTAL = 0


if __name__ == '__main__':
    main()
