import os, re, json, zipfile, subprocess
from simumbrella import umb

ARCHIVE_URL = re.compile(r'^https://github\.com/([^/]+)/([^/]+)/archive/refs/heads/(.+)\.zip$')
ZIPBALL_URL = re.compile(r'^https://api\.github\.com/repos/([^/]+)/([^/]+)/zipball/(.+)$')
CLONE_URL = re.compile(r'^https://[^/]+/([^/]+)/([^/]+)\.git$')

class FakeRemote:
    '''
    Stand-in for GitHub plus the curl, unzip, git and npm executables. Installed in
    place of `umb._exec`; records every command and reproduces its filesystem effects.
    '''

    def __init__(self):
        self.repos = {}
        self.calls = []
        self.downloaded = []
        self.cloned = []
        self.failing_git = set()

    def add_repo(self, name:str, files:dict=None, branches=('main',)):
        '''
        Publish a repo. `files` maps relative paths to str content (dicts are dumped as JSON).
        '''
        self.repos[name] = {'files': files or {}, 'branches': set(branches)}

    def __call__(self, cmd, cwd=None, interactive=False, shell=False):
        cmd = list(cmd)
        self.calls.append((cmd, cwd))
        tool = cmd[0]
        if tool == 'curl':
            return self._curl(cmd)
        if tool == 'unzip':
            with zipfile.ZipFile(cmd[2]) as z:
                z.extractall(cmd[4])
            return ''
        if tool == 'git':
            return self._git(cmd, cwd)
        if tool == 'sudo':
            return ''
        if tool == 'npm':
            if cmd[1] in ('ci', 'install'):
                os.makedirs(os.path.join(cwd, 'node_modules'), exist_ok=True)
            return ''
        raise FileNotFoundError(tool)

    def _write_files(self, root:str, files:dict):
        for rel,content in files.items():
            path = os.path.join(root, rel)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, 'w') as f:
                f.write(content if isinstance(content, str) else json.dumps(content))

    def _curl(self, cmd):
        url = cmd[-1]
        out = cmd[cmd.index('-o') + 1]
        m = ARCHIVE_URL.match(url) or ZIPBALL_URL.match(url)
        if not m:
            raise subprocess.CalledProcessError(22, cmd)
        _, name, branch = m.groups()
        repo = self.repos.get(name)
        if repo is None or branch not in repo['branches']:
            raise subprocess.CalledProcessError(22, cmd)
        with zipfile.ZipFile(out, 'w') as z:
            z.writestr(f'{name}-{branch}/', '')
            for rel,content in repo['files'].items():
                z.writestr(f'{name}-{branch}/{rel}', content if isinstance(content, str) else json.dumps(content))
        self.downloaded.append(name)
        return ''

    def _git(self, cmd, cwd):
        args = cmd[1:]
        while args[0] == '-c':
            args = args[2:]
        if args[0] == 'clone':
            url, dest = args[-2], args[-1]
            name = CLONE_URL.match(url).group(2)
            if name not in self.repos:
                raise subprocess.CalledProcessError(128, cmd, b'repository not found')
            os.makedirs(os.path.join(dest, '.git'))
            self._write_files(dest, self.repos[name]['files'])
            self.cloned.append(name)
            return ''
        if os.path.basename(cwd) in self.failing_git:
            raise subprocess.CalledProcessError(1, cmd, b'fatal: simulated failure')
        return ''

    def git_calls(self, subcmd:str):
        ''' Returns the basenames of the directories a git subcommand ran in. '''
        ans = []
        for cmd,cwd in self.calls:
            if cmd[0] == 'git' and subcmd in cmd and 'clone' not in cmd:
                ans.append(os.path.basename(cwd))
        return ans

def install_remote(monkeypatch) -> FakeRemote:
    remote = FakeRemote()
    monkeypatch.setattr(umb, '_exec', remote)
    return remote

def add_tooling(remote:FakeRemote, common_deps=None, build_json=None):
    '''
    Publish chipper and perennial on the tooling branch. `build_json` overrides the
    generated chipper/build.json content verbatim.
    '''
    if build_json is None:
        build_json = {'common': {'phetLibs': list(common_deps or [])}}
    branch = umb.Config().tooling_branch
    remote.add_repo('chipper', {
        'build.json': build_json,
        'package.json': {'name': 'chipper'},
        'package-lock.json': '{}',
    }, branches=(branch,))
    remote.add_repo('perennial', {'package.json': {'name': 'perennial'}}, branches=(branch,))

def add_sim_repo(remote:FakeRemote, name:str, phet_libs=None, branches=('main',)):
    remote.add_repo(name, {'package.json': {'name': name, 'phet': {'phetLibs': list(phet_libs or [])}}}, branches=branches)

def write_manifest(root, sims):
    with open(os.path.join(root, 'sims.json'), 'w') as f:
        json.dump({'sims': sims}, f)

def write_file(path, content):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'w') as f:
        f.write(content)

def repo_dirs(root) -> list:
    repos = os.path.join(root, 'repos')
    return sorted(os.listdir(repos)) if os.path.isdir(repos) else []
