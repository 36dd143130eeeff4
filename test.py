#!/usr/bin/env python3
import os
import sys
import json
import tempfile
import subprocess
from contextlib import contextmanager
from typing import Any, Iterator

from pkgm import (
    Config, DelegateFailure, Env, Installation, Installer, Inventory,
    Log, Mirror, NotFound, NotInstalled, Privilege, Range, Resolution,
    Resolver, ResolverError, Scanner, SemVer, Shelf, Stubs, Uninstaller,
    UnsupportedEntryType, main as runCli,
)

Log.LEVEL = 0


def main() -> None:
    testSemVer()
    testRange()
    testMirrorHardlinks()
    testMirrorUnsupportedType()
    testMirrorReplacesExisting()
    testOverlayPointsIntoMirror()
    testSelfIsNotOverlaid()
    testDeployIdempotent()
    testDeployStubs()
    testMajorAliases()
    testMajorAliasSingleVersion()
    testMergeEnv()
    testMergeEnvTokens()
    testWriteStub()
    testUninstallSharedDir()
    testUninstallSameBinaryName()
    testUninstallCleanup()
    testUninstallNotInstalled()
    testUninstallNotFound()
    testUninstallByBinaryName()
    testUninstallElevated()
    testNeedsElevation()
    testInstallElevated()
    testSudoInstall()
    testExitCodes()
    testWalkInstalled()
    testOutdated()
    testOutdatedHydratedRange()
    testUpdatePartition()
    testResolverQuery()
    testResolverFailure()
    testResolverMalformed()
    print('ok')


# -----------------------------------
#  Helper
# -----------------------------------

@contextmanager
def patched(obj: Any, **attrs: Any) -> Iterator[None]:
    ''' Temporarily replace class attributes (restores staticmethods) '''
    saved = {key: obj.__dict__[key] for key in attrs}
    for key, value in attrs.items():
        setattr(obj, key, value)
    try:
        yield
    finally:
        for key, value in saved.items():
            setattr(obj, key, value)


@contextmanager
def sandbox() -> Iterator[str]:
    ''' Temp dir with `system` + `local` roots and an empty pkgx store '''
    with tempfile.TemporaryDirectory() as tmp:
        tmp = os.path.realpath(tmp)
        for name in ('system', 'local', 'pkgx'):
            os.makedirs(os.path.join(tmp, name))
        prefix = Config.Prefix(os.path.join(tmp, 'system'),
                               os.path.join(tmp, 'local'))
        with patched(Config, PREFIX=prefix), \
                patched(Env, PKGX_DIR=os.path.join(tmp, 'pkgx'), IS_LINUX=True):
            yield tmp


def writeFile(path: str, content: str = '', mode: int = 0o644) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as fp:
        fp.write(content)
    os.chmod(path, mode)


def readFile(path: str) -> str:
    with open(path) as fp:
        return fp.read()


def fakePackage(pkgxDir: str, project: str, version: str,
                bins: 'tuple[str, ...]|list[str]' = (),
                extra: 'tuple[str, ...]|list[str]' = ()) -> str:
    ''' Create `<pkgx>/<project>/v<version>/...` and return prefix '''
    prefix = f'{project}/v{version}'
    path = os.path.join(pkgxDir, prefix)
    for name in bins:
        writeFile(os.path.join(path, 'bin', name), f'#!/bin/sh\necho {name}\n',
                  0o755)
    for name in extra:
        writeFile(os.path.join(path, name), name)
    os.makedirs(path, exist_ok=True)
    return prefix


def snapshot(root: str) -> dict[str, Any]:
    ''' Comparable state of a tree (link targets, inodes, stub content) '''
    rv = {}  # type: dict[str, Any]
    for base, dirs, files in os.walk(root):
        for name in dirs + files:
            path = os.path.join(base, name)
            rel = os.path.relpath(path, root)
            if os.path.islink(path):
                rv[rel] = ('link', os.readlink(path))
            elif os.path.isdir(path):
                rv[rel] = ('dir',)
            elif rel.startswith('pkgs' + os.sep):
                rv[rel] = ('file', os.lstat(path).st_ino)
            else:
                rv[rel] = ('file', readFile(path))
    return rv


# -----------------------------------
#  Versions
# -----------------------------------

def testSemVer() -> None:
    assert SemVer('v1.2.3') == SemVer('1.2.3')
    assert str(SemVer('v1.2.3')) == '1.2.3'
    assert SemVer('1.2') == SemVer('1.2.0')
    assert SemVer('1.10.0') > SemVer('1.9.9')
    assert SemVer('2.0.0-rc1') < SemVer('2.0.0')
    assert SemVer('1.2.3.4') > SemVer('1.2.3')
    assert SemVer('3').major == 3 and SemVer('3').minor == 0
    assert SemVer('1.2.3').marketing == '1.2'
    assert SemVer.parse('var') is None
    assert SemVer.parse('vendor') is None
    assert SemVer.parse('') is None
    assert sorted([SemVer('1.3.0'), SemVer('1.2.0'), SemVer('2.0.1')])[-1] \
        == SemVer('2.0.1')


def testRange() -> None:
    caret = Range.caret(SemVer('1.2.0'))
    assert str(caret) == '^1.2.0'
    assert caret.satisfies(SemVer('1.2.0'))
    assert caret.satisfies(SemVer('1.9.9'))
    assert not caret.satisfies(SemVer('2.0.0'))
    assert not caret.satisfies(SemVer('1.1.9'))

    zero = Range('^0.2.3')
    assert zero.satisfies(SemVer('0.2.9'))
    assert not zero.satisfies(SemVer('0.3.0'))
    assert not Range('^0.0.3').satisfies(SemVer('0.0.4'))

    assert Range('~1.2.3').satisfies(SemVer('1.2.9'))
    assert not Range('~1.2.3').satisfies(SemVer('1.3.0'))

    tight = Range('>=1.2.0<1.3')
    assert tight.satisfies(SemVer('1.2.1'))
    assert not tight.satisfies(SemVer('1.3.0'))

    assert Range('=1.2.3').satisfies(SemVer('1.2.3'))
    assert not Range('=1.2.3').satisfies(SemVer('1.2.4'))
    assert Range('*').satisfies(SemVer('99'))
    assert Range('^1 || ^3').satisfies(SemVer('3.1'))
    assert not Range('^1 || ^3').satisfies(SemVer('2.1'))


# -----------------------------------
#  Mirror + Farm + Shelf
# -----------------------------------

def testMirrorHardlinks() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        prefix = fakePackage(pkgx, 'example.com', '1.2.0', bins=['foo'],
                             extra=['lib/libfoo.so', 'share/doc/a/README'])
        os.symlink('libfoo.so', os.path.join(pkgx, prefix, 'lib/libfoo.so.1'))

        store = os.path.join(tmp, 'local', 'pkgs')
        Mirror.mirror(store, pkgx, prefix)

        src = os.path.join(pkgx, prefix)
        dst = os.path.join(store, prefix)
        for rel in ('bin/foo', 'lib/libfoo.so', 'share/doc/a/README'):
            assert os.path.samefile(os.path.join(src, rel),
                                    os.path.join(dst, rel)), rel
            assert not os.path.islink(os.path.join(dst, rel))
        assert os.readlink(os.path.join(dst, 'lib/libfoo.so.1')) == 'libfoo.so'
        assert sorted(os.listdir(dst)) == sorted(os.listdir(src))


def testMirrorUnsupportedType() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        prefix = fakePackage(pkgx, 'example.com', '1.0.0', bins=['foo'])
        os.mkfifo(os.path.join(pkgx, prefix, 'fifo'))
        try:
            Mirror.mirror(os.path.join(tmp, 'local', 'pkgs'), pkgx, prefix)
            assert False, 'fifo must not be mirrored'
        except UnsupportedEntryType as e:
            assert 'fifo' in str(e)


def testMirrorReplacesExisting() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        prefix = fakePackage(pkgx, 'example.com', '1.0.0', bins=['foo'])
        store = os.path.join(tmp, 'local', 'pkgs')
        stale = os.path.join(store, prefix, 'bin', 'foo')
        writeFile(stale, 'stale')
        writeFile(os.path.join(store, prefix, 'bin', '.foo.pkgm~'), 'leftover')

        Mirror.mirror(store, pkgx, prefix)
        assert os.path.samefile(stale, os.path.join(pkgx, prefix, 'bin/foo'))
        assert not os.path.lexists(
            os.path.join(store, prefix, 'bin', '.foo.pkgm~'))


def testOverlayPointsIntoMirror() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        base = os.path.join(tmp, 'local')
        a = fakePackage(pkgx, 'a.org', '1.0.0', bins=['aa'],
                        extra=['share/a/x', 'README'])
        b = fakePackage(pkgx, 'b.org', '2.0.0', bins=['bb'])
        Installer.deploy(pkgx, [a, b], {}, base)

        for name, prefix in (('aa', a), ('bb', b)):
            link = os.path.join(base, 'bin', name)
            target = os.path.join(base, 'pkgs', prefix, 'bin', name)
            assert os.path.islink(link)
            assert os.readlink(link) == target
        assert os.readlink(os.path.join(base, 'share/a/x')) == \
            os.path.join(base, 'pkgs', a, 'share/a/x')
        assert os.path.isdir(os.path.join(base, 'bin'))
        assert not os.path.islink(os.path.join(base, 'bin'))
        # only well-known dirs are overlaid
        assert not os.path.lexists(os.path.join(base, 'README'))


def testSelfIsNotOverlaid() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        base = os.path.join(tmp, 'local')
        prefix = fakePackage(pkgx, 'pkgx.sh', '2.1.0', bins=['pkgx'])
        Installer.deploy(pkgx, [prefix], {'pkgx.sh': {'FOO': 'x'}}, base)

        assert os.path.isfile(os.path.join(base, 'pkgs', prefix, 'bin/pkgx'))
        assert os.path.islink(os.path.join(base, 'pkgs/pkgx.sh/v2'))
        assert not os.path.lexists(os.path.join(base, 'bin', 'pkgx'))


def testDeployIdempotent() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        base = os.path.join(tmp, 'system')
        a = fakePackage(pkgx, 'a.org', '1.0.0', bins=['aa'],
                        extra=['lib/liba.so', 'etc/a.conf'])
        b = fakePackage(pkgx, 'b.org/cli', '2.0.0', bins=['bb'])
        env = {'a.org': {'LD_LIBRARY_PATH': f'{base}/lib'},
               'b.org/cli': {'LD_LIBRARY_PATH': f'{base}/lib'}}

        Installer.deploy(pkgx, [a, b], env, base)
        first = snapshot(base)
        Installer.deploy(pkgx, [a, b], env, base)
        assert snapshot(base) == first
        assert first['pkgs/a.org/v1'] == ('link', 'v1.0.0')
        assert first['pkgs/b.org/cli/v2'] == ('link', 'v2.0.0')


def testDeployStubs() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        base = os.path.join(tmp, 'local')
        prefix = fakePackage(pkgx, 'example.com', '1.0.0', bins=['foo'])
        Installer.deploy(pkgx, [prefix], {'example.com': {'FOO': 'a'}}, base)

        stub = os.path.join(base, 'bin', 'foo')
        real = os.path.join(base, 'pkgs', prefix, 'bin', 'foo')
        assert not os.path.islink(stub)
        assert os.access(stub, os.X_OK)
        assert readFile(stub) == \
            f'#!/bin/sh\nexport FOO="a"\nexec "{real}" "$@"\n'
        # real binary (and pkgx original via hardlink) untouched
        assert readFile(real) == '#!/bin/sh\necho foo\n'
        assert readFile(os.path.join(pkgx, prefix, 'bin', 'foo')) == \
            '#!/bin/sh\necho foo\n'


def testMajorAliases() -> None:
    with tempfile.TemporaryDirectory() as shelf:
        for name in ('v1.2.0', 'v1.3.0', 'v2.0.1', 'var'):
            os.makedirs(os.path.join(shelf, name))
        Shelf.refreshMajorAliases(os.path.join(shelf, 'v1.2.0'))

        assert os.readlink(os.path.join(shelf, 'v1')) == 'v1.3.0'
        assert os.readlink(os.path.join(shelf, 'v2')) == 'v2.0.1'
        assert sorted(os.listdir(shelf)) == \
            ['v1', 'v1.2.0', 'v1.3.0', 'v2', 'v2.0.1', 'var']

        # idempotent, and follows newly installed versions
        Shelf.refreshMajorAliases(os.path.join(shelf, 'v1.2.0'))
        os.makedirs(os.path.join(shelf, 'v1.10.0'))
        Shelf.refreshMajorAliases(os.path.join(shelf, 'v1.10.0'))
        assert os.readlink(os.path.join(shelf, 'v1')) == 'v1.10.0'


def testMajorAliasSingleVersion() -> None:
    with tempfile.TemporaryDirectory() as shelf:
        os.makedirs(os.path.join(shelf, 'v1.2.0'))
        Shelf.refreshMajorAliases(os.path.join(shelf, 'v1.2.0'))
        assert sorted(os.listdir(shelf)) == ['v1', 'v1.2.0']
        assert os.readlink(os.path.join(shelf, 'v1')) == 'v1.2.0'


# -----------------------------------
#  Environment stubs
# -----------------------------------

def testMergeEnv() -> None:
    pkgs = [Installation('a.org', SemVer('1.0.0'), '/pkgx/a.org/v1.0.0'),
            Installation('b.org', SemVer('2.0.0'), '/pkgx/b.org/v2.0.0')]
    runtimeEnv = {'a.org': {'FOO': 'a', 'BAR': 'x'},
                  'b.org': {'FOO': 'b', 'BAR': 'x'}}

    with patched(Env, IS_LINUX=True):
        merged = Stubs.mergeEnv(runtimeEnv, pkgs, '/usr/local')
        assert merged == {'FOO': 'a:b', 'BAR': 'x',
                          'LD_LIBRARY_PATH': '/usr/local/lib'}

        flat = Stubs.expandRuntimeEnv(runtimeEnv, pkgs, '/usr/local')
        assert list(flat) == ['a.org', 'b.org']
        assert flat['a.org'] == flat['b.org'] == merged

        extra = {'a.org': {'LD_LIBRARY_PATH': '/opt/lib'}}
        assert Stubs.mergeEnv(extra, pkgs, '/usr/local')['LD_LIBRARY_PATH'] \
            == '/opt/lib:/usr/local/lib'

    with patched(Env, IS_LINUX=False):
        merged = Stubs.mergeEnv(runtimeEnv, pkgs, '/usr/local')
        assert 'LD_LIBRARY_PATH' not in merged

        # not part of the package set
        unknown = {'zzz.org': {'Z': '1'}, 'a.org': {'FOO': 'a'}}
        assert Stubs.mergeEnv(unknown, pkgs, '/usr/local') == {'FOO': 'a'}


def testMergeEnvTokens() -> None:
    pkgs = [Installation('a.org', SemVer('1.2.3'), '/pkgx/a.org/v1.2.3'),
            Installation('b.org', SemVer('2.0.0'), '/pkgx/b.org/v2.0.0')]
    runtimeEnv = {'a.org': {
        'A_HOME': '{{prefix}}/share',
        'A_VER': '{{version.marketing}}-{{version.patch}}',
        'B_DIR': '{{deps.b.org.prefix}}/etc:{{deps.b.org.version.major}}',
        'KEEP': '{{unknown}}',
        'HW': '{{hw.target}}:{{ hw.platform }}:{{hw.arch}}',
        'CPUS': '{{hw.concurrency}}',
    }}
    with patched(Env, IS_LINUX=False), \
            patched(Inventory, platform=lambda: ('linux', 'aarch64')):
        merged = Stubs.mergeEnv(runtimeEnv, pkgs, '/usr/local')
    assert merged['A_HOME'] == '/pkgx/a.org/v1.2.3/share'
    assert merged['A_VER'] == '1.2-3'
    assert merged['B_DIR'] == '/pkgx/b.org/v2.0.0/etc:2'
    assert merged['KEEP'] == '{{unknown}}'
    assert merged['HW'] == 'aarch64-linux:linux:aarch64'
    assert int(merged['CPUS']) >= 1


def testWriteStub() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        real = os.path.join(tmp, 'real')
        writeFile(real, 'original', 0o755)
        stub = os.path.join(tmp, 'bin', 'tool')
        os.makedirs(os.path.dirname(stub))
        os.symlink(real, stub)

        Stubs.writeStub(real, {'A': '1', 'B': 'x:y'}, stub)
        assert not os.path.islink(stub)
        assert readFile(stub) == (
            '#!/bin/sh\nexport A="1"\nexport B="x:y"\n'
            f'exec "{real}" "$@"\n')
        assert os.stat(stub).st_mode & 0o777 == 0o755
        assert readFile(real) == 'original'


# -----------------------------------
#  Uninstall
# -----------------------------------

def deployTwo(tmp: str, root: str) -> tuple[str, str]:
    pkgx = os.path.join(tmp, 'pkgx')
    a = fakePackage(pkgx, 'a.org', '1.0.0', bins=['aa'],
                    extra=['share/shared/a.txt'])
    b = fakePackage(pkgx, 'b.org', '2.0.0', bins=['bb'],
                    extra=['share/shared/b.txt'])
    Installer.deploy(pkgx, [a, b], {}, root)
    return a, b


def testUninstallSharedDir() -> None:
    with sandbox() as tmp:
        base = Config.PREFIX.LOCAL
        deployTwo(tmp, base)
        Uninstaller.uninstall('a.org')

        assert not os.path.lexists(os.path.join(base, 'bin', 'aa'))
        assert not os.path.lexists(os.path.join(base, 'share/shared/a.txt'))
        assert os.path.islink(os.path.join(base, 'bin', 'bb'))
        assert os.path.islink(os.path.join(base, 'share/shared/b.txt'))
        assert os.path.isdir(os.path.join(base, 'bin'))
        assert not os.path.exists(os.path.join(base, 'pkgs', 'a.org'))
        assert os.path.isdir(os.path.join(base, 'pkgs', 'b.org', 'v2.0.0'))


def testUninstallSameBinaryName() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        base = Config.PREFIX.LOCAL
        a = fakePackage(pkgx, 'a.org', '1.0.0', bins=['tool', 'aa'])
        b = fakePackage(pkgx, 'b.org', '2.0.0', bins=['tool'])
        env = {'a.org': {'X': '1'}, 'b.org': {'X': '1'}}
        Installer.deploy(pkgx, [a, b], env, base)

        tool = os.path.join(base, 'bin', 'tool')
        bTool = os.path.join(base, 'pkgs', b, 'bin', 'tool')
        assert not os.path.islink(tool)
        assert f'exec "{bTool}" "$@"' in readFile(tool)

        Uninstaller.uninstall('a.org')
        assert not os.path.lexists(os.path.join(base, 'bin', 'aa'))
        assert f'exec "{bTool}" "$@"' in readFile(tool)
        assert os.path.isfile(bTool)


def testUninstallCleanup() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        base = Config.PREFIX.LOCAL
        prefix = fakePackage(pkgx, 'github.com/foo/bar', '1.0.0', bins=['bar'])
        Installer.deploy(pkgx, [prefix], {}, base)
        Uninstaller.uninstall('github.com/foo/bar')

        assert not os.path.lexists(os.path.join(base, 'bin', 'bar'))
        assert not os.path.exists(os.path.join(base, 'pkgs'))
        assert not os.path.exists(os.path.join(base, 'bin'))


def testUninstallNotInstalled() -> None:
    with sandbox() as tmp:
        base = Config.PREFIX.LOCAL
        # store entry exists, but nothing is linked
        writeFile(os.path.join(base, 'pkgs/a.org/v1.0.0/bin/aa'), 'x')
        before = snapshot(tmp)
        try:
            Uninstaller.uninstall('a.org')
            assert False, 'must raise NotInstalled'
        except NotInstalled:
            pass
        assert snapshot(tmp) == before


def testUninstallNotFound() -> None:
    with sandbox():
        try:
            Uninstaller.uninstall('does-not-exist')
            assert False, 'must raise NotFound'
        except NotFound as e:
            assert 'does-not-exist' in str(e)


def testUninstallByBinaryName() -> None:
    with sandbox() as tmp:
        base = Config.PREFIX.LOCAL
        pkgx = os.path.join(tmp, 'pkgx')
        a, _ = deployTwo(tmp, base)
        assert Uninstaller.findProject('bb') == 'b.org'

        # stubs are regular files, read the exec line instead
        Installer.deploy(pkgx, [a], {'a.org': {'X': '1'}}, base)
        assert not os.path.islink(os.path.join(base, 'bin', 'aa'))
        Uninstaller.uninstall('aa')
        assert not os.path.lexists(os.path.join(base, 'bin', 'aa'))
        assert os.path.islink(os.path.join(base, 'bin', 'bb'))


def testUninstallElevated() -> None:
    calls = []  # type: list[list[str]]

    def fakeSudo(args: list[str], *, quiet: bool = False) -> int:
        calls.append(args)
        return subprocess.run(
            args, stderr=subprocess.DEVNULL if quiet else None).returncode

    with sandbox() as tmp:
        system = Config.PREFIX.SYSTEM
        deployTwo(tmp, system)
        with patched(Privilege, run=fakeSudo,
                     writable=lambda path: path != system):
            Uninstaller.uninstall('a.org')

        assert [x[0] for x in calls] == ['rm', 'rmdir', 'rm', 'rmdir']
        assert sorted(calls[0][1:]) == [
            os.path.join(system, 'bin', 'aa'),
            os.path.join(system, 'share', 'shared', 'a.txt')]
        # children before parents
        assert calls[1][1:] == [os.path.join(system, 'share', 'shared'),
                                os.path.join(system, 'share'),
                                os.path.join(system, 'bin')]
        assert calls[2] == ['rm', '-rf', os.path.join(system, 'pkgs', 'a.org')]
        assert calls[3] == ['rmdir', os.path.join(system, 'pkgs')]
        assert not os.path.lexists(os.path.join(system, 'bin', 'aa'))
        assert os.path.islink(os.path.join(system, 'bin', 'bb'))
        assert not os.path.exists(os.path.join(system, 'pkgs', 'a.org'))

    # failing file removal aborts everything else
    calls.clear()
    with sandbox() as tmp:
        system = Config.PREFIX.SYSTEM
        deployTwo(tmp, system)
        with patched(Privilege, run=lambda args, **kw: calls.append(args) or 1,
                     writable=lambda path: False):
            try:
                Uninstaller.uninstall('a.org')
                assert False, 'must raise DelegateFailure'
            except DelegateFailure as e:
                assert e.exitCode == 1
        assert len(calls) == 1
        assert os.path.isdir(os.path.join(system, 'pkgs', 'a.org'))


def testNeedsElevation() -> None:
    with sandbox():
        system, local = Config.PREFIX
        assert not Privilege.needsElevation(system)  # temp dir is writable
        assert not Privilege.needsElevation(local)
        with patched(Privilege, writable=lambda path: False):
            assert Privilege.needsElevation(system)
            assert not Privilege.needsElevation(local)
        assert not os.path.exists(os.path.join(system, '.writable_test'))


# -----------------------------------
#  Outdated / update
# -----------------------------------

def testInstallElevated() -> None:
    calls = []  # type: list[list[str]]
    codes = [0, 5]

    def fakeSudo(args: list[str], *, quiet: bool = False) -> int:
        calls.append(args)
        return codes.pop(0)

    with sandbox() as tmp:
        system, local = Config.PREFIX
        pkgx = os.path.join(tmp, 'pkgx')
        prefix = fakePackage(pkgx, 'a.org', '1.0.0', bins=['aa'])
        resolution = Resolution(
            [Installation('a.org', SemVer('1.0.0'), os.path.join(pkgx, prefix))],
            {}, {'a.org': {'FOO': '{{version}}'}})

        with patched(Resolver, query=lambda specs: resolution), \
                patched(Privilege, run=fakeSudo, writable=lambda path: False):
            Installer.install(['a.org'], system)
            assert len(calls) == 1
            cmd = calls[0]
            assert cmd[:3] == [
                '/usr/bin/env', '-i', f'PATH={Resolver.standardPath()}']
            assert cmd[3:5] == [sys.executable, '-I']
            idx = cmd.index('sudo-install')
            assert cmd[idx + 1] == pkgx
            assert json.loads(cmd[idx + 2]) == {'a.org': {
                'FOO': '1.0.0', 'LD_LIBRARY_PATH': f'{system}/lib'}}
            assert cmd[idx + 3:] == [system, prefix]
            # the parent process does not deploy anything itself
            assert not os.path.exists(os.path.join(system, 'pkgs'))

            try:
                Installer.install(['a.org'], system)
                assert False, 'must raise DelegateFailure'
            except DelegateFailure as e:
                assert e.exitCode == 5

            # user-local root is never elevated
            Installer.install(['a.org'], local)
            assert len(calls) == 2
            assert 'export FOO="1.0.0"' in readFile(
                os.path.join(local, 'bin', 'aa'))


def runMain(*argv: str) -> 'int|str|None':
    ''' Run the CLI entry point, return its exit code '''
    with patched(sys, argv=['pkgm', *argv]), \
            patched(Config, PREFIX=Config.PREFIX, RESOLVER=Config.RESOLVER), \
            patched(Log, LEVEL=Log.LEVEL):
        try:
            runCli()
        except SystemExit as e:
            return e.code
    return 0


def testSudoInstall() -> None:
    with sandbox() as tmp:
        pkgx = os.path.join(tmp, 'pkgx')
        local = Config.PREFIX.LOCAL
        prefix = fakePackage(pkgx, 'a.org', '1.0.0', bins=['aa'])
        env = json.dumps({'a.org': {'FOO': 'bar'}})
        with patched(Env, CONFIG_PATH=os.path.join(tmp, 'missing.ini')):
            assert runMain('sudo-install', pkgx, env, local, prefix) == 0

        real = os.path.join(local, 'pkgs', prefix, 'bin', 'aa')
        assert readFile(os.path.join(local, 'bin', 'aa')) == \
            f'#!/bin/sh\nexport FOO="bar"\nexec "{real}" "$@"\n'
        assert os.readlink(os.path.join(local, 'pkgs/a.org/v1')) == 'v1.0.0'


def testExitCodes() -> None:
    with sandbox() as tmp:
        exe = fakeResolver(tmp, 'exit 7\n')
        config = os.path.join(tmp, 'config.ini')
        writeFile(config, f'[resolver]\nexecutable = {exe}\n')
        with patched(Env, CONFIG_PATH=config):
            assert runMain() == 2  # missing command
            assert runMain('install') == 1  # no packages specified
            assert runMain('local-install', 'a.org') == 7  # resolver code
            assert runMain('uninstall', 'nope') == 1
            assert runMain('sudo-install', tmp, '{not json', tmp) == 2
            assert runMain('sudo-install', tmp, '[]', tmp) == 2
            assert runMain('list') == 0


def testWalkInstalled() -> None:
    with sandbox():
        system, local = Config.PREFIX
        for path in ('a.org/v1.2.0', 'a.org/v1.3.0', 'a.org/var',
                     'github.com/x/y/v0.1.0'):
            os.makedirs(os.path.join(local, 'pkgs', path))
        os.symlink('v1.3.0', os.path.join(local, 'pkgs/a.org/v1'))
        os.makedirs(os.path.join(system, 'pkgs/b.org/v2.0.0'))

        pkgs = Scanner.walkInstalled()
        assert [(x.project, str(x.version)) for x in pkgs] == [
            ('a.org', '1.2.0'), ('a.org', '1.3.0'), ('b.org', '2.0.0'),
            ('github.com/x/y', '0.1.0')]
        assert pkgs[2].path == os.path.join(system, 'pkgs/b.org/v2.0.0')


def fakeInventory(versions: list[str]) -> Any:
    return lambda project: [SemVer(x) for x in versions]


def testOutdated() -> None:
    with sandbox():
        local = Config.PREFIX.LOCAL
        os.makedirs(os.path.join(local, 'pkgs/a.org/v1.2.0'))
        asked = []  # type: list[tuple[str, Range]]

        def hydrate(constraints: list[tuple[str, Range]]) -> dict[str, Range]:
            asked.extend(constraints)
            return {project: rng for project, rng in constraints}

        with patched(Resolver, hydrate=hydrate), patched(
                Inventory, versions=fakeInventory(
                    ['1.2.0', '1.2.1', '1.3.0', '2.0.0'])):
            upgrades = Scanner.outdated()

        assert [(p, str(r)) for p, r in asked] == [('a.org', '^1.2.0')]
        assert len(upgrades) == 1
        assert upgrades[0].pkg.project == 'a.org'
        assert upgrades[0].version == SemVer('1.3.0')
        assert upgrades[0].spec == 'a.org=1.3.0'


def testOutdatedHydratedRange() -> None:
    with sandbox():
        local = Config.PREFIX.LOCAL
        os.makedirs(os.path.join(local, 'pkgs/a.org/v1.2.0'))
        os.makedirs(os.path.join(local, 'pkgs/b.org/v3.0.0'))
        graph = {'a.org': Range('>=1.2.0<1.3')}  # b.org missing: own caret
        with patched(Resolver, hydrate=lambda constraints: graph), patched(
                Inventory, versions=fakeInventory(
                    ['1.2.0', '1.2.1', '1.3.0', '3.0.0', '3.1.0', '4.0.0'])):
            upgrades = Scanner.pendingUpgrades()
        assert [(x.pkg.project, str(x.version)) for x in upgrades] == [
            ('a.org', '1.2.1'), ('b.org', '3.1.0')]

        with patched(Resolver, hydrate=lambda constraints: graph), patched(
                Inventory, versions=fakeInventory(['1.2.0'])):
            assert Scanner.outdated() == []


def testUpdatePartition() -> None:
    with sandbox():
        system, local = Config.PREFIX
        os.makedirs(os.path.join(local, 'pkgs/a.org/v1.2.0'))
        os.makedirs(os.path.join(system, 'pkgs/b.org/v1.0.0'))
        installs = []  # type: list[tuple[list[str], str]]

        def install(specs: list[str], basePath: str) -> None:
            installs.append((specs, basePath))

        with patched(Installer, install=install), \
                patched(Resolver, hydrate=lambda constraints: {}), \
                patched(Inventory, versions=fakeInventory(['1.0.0', '1.3.0'])):
            Scanner.update()
            assert installs == [(['a.org=1.3.0'], local)]

            # once local is up to date, system is next
            os.rename(os.path.join(local, 'pkgs/a.org/v1.2.0'),
                      os.path.join(local, 'pkgs/a.org/v1.3.0'))
            Scanner.update()
            assert installs[1] == (['b.org=1.3.0'], system)

            os.rename(os.path.join(system, 'pkgs/b.org/v1.0.0'),
                      os.path.join(system, 'pkgs/b.org/v1.3.0'))
            Scanner.update()
            assert len(installs) == 2


# -----------------------------------
#  Resolver
# -----------------------------------

def fakeResolver(tmp: str, body: str) -> str:
    path = os.path.join(tmp, 'fake-pkgx')
    writeFile(path, '#!/bin/sh\n' + body, 0o755)
    return path


def testResolverQuery() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        response = json.dumps({
            'pkgs': [{'path': '/pkgx/a.org/v1.0.0', 'project': 'a.org',
                      'version': '1.0.0'}],
            'env': {'a.org': {'PATH': '/pkgx/a.org/v1.0.0/bin'}},
            'runtime_env': {'a.org': {'FOO': '{{prefix}}/x'}},
        })
        writeFile(os.path.join(tmp, 'response.json'), response)
        # $PKGM_TEST_LEAK must not reach the resolver
        exe = fakeResolver(tmp, (
            'echo "$@" > "{0}/args"\n'
            'echo "LEAK=$PKGM_TEST_LEAK" > "{0}/env"\n'
            'cat "{0}/response.json"\n').format(tmp))

        os.environ['PKGM_TEST_LEAK'] = 'secret'
        try:
            with patched(Config, RESOLVER=Config.Resolver(exe, '')):
                rv = Resolver.query(['a.org', 'b.org^2'])
        finally:
            del os.environ['PKGM_TEST_LEAK']

        assert readFile(os.path.join(tmp, 'args')) == \
            '+a.org +b.org^2 --json=v1\n'
        assert readFile(os.path.join(tmp, 'env')) == 'LEAK=\n'
        assert rv.pkgs == [
            Installation('a.org', SemVer('1.0.0'), '/pkgx/a.org/v1.0.0')]
        assert rv.pkgs[0].prefix == 'a.org/v1.0.0'
        assert rv.runtimeEnv == {'a.org': {'FOO': '{{prefix}}/x'}}


def testResolverFailure() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        exe = fakeResolver(tmp, 'exit 3\n')
        with patched(Config, RESOLVER=Config.Resolver(exe, '')):
            try:
                Resolver.query(['a.org'])
                assert False, 'must raise DelegateFailure'
            except DelegateFailure as e:
                assert e.exitCode == 3


def testResolverMalformed() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        for body in ('echo not-json\n',
                     'echo \'{"pkgs": [{}]}\'\n',
                     'echo \'[]\'\n',
                     'echo \'{"pkgs": [], "runtime_env": "x"}\'\n'):
            exe = fakeResolver(tmp, body)
            with patched(Config, RESOLVER=Config.Resolver(exe, '')):
                try:
                    Resolver.query(['a.org'])
                    assert False, 'must raise ResolverError'
                except ResolverError:
                    pass

        exe = fakeResolver(tmp, (
            'echo \'{"graph": [{"project": "a.org", '
            '"constraint": ">=1.2<1.3"}]}\'\n'))
        with patched(Config, RESOLVER=Config.Resolver(exe, '')):
            graph = Resolver.hydrate([('a.org', Range('^1.2.0'))])
        assert list(graph) == ['a.org']
        assert graph['a.org'].satisfies(SemVer('1.2.5'))
        assert not graph['a.org'].satisfies(SemVer('1.3.0'))


if __name__ == '__main__':
    main()
