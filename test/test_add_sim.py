#!/usr/bin/env python3

'''
Tests `umb add-sim`, `umb remove-sim` and `umb list-sims`.
'''

import os, sys, json
import pytest
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
import utils
from simumbrella import umb

def publish(remote, common_deps=('axon', 'joist')):
    utils.add_tooling(remote, common_deps=common_deps)
    for lib in ['axon', 'joist', 'b', 'scenery', 'shared', 'd']:
        utils.add_sim_repo(remote, lib)

def test_manifest_scenario(tmp_path, monkeypatch):
    ''' Sim with a distinct live repo: tooling + snapshot of sim + live clone + snapshot deps. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote, common_deps=[])
    utils.add_sim_repo(remote, 'a')
    utils.add_sim_repo(remote, 'a-lib')
    utils.write_manifest(tmp_path, [{'sim': 'a', 'liveRepo': 'a-lib', 'deps': ['b']}])
    root = str(tmp_path)

    zips = umb.add_sim(['a', '--root', root])
    assert zips == ['b']
    assert sorted(remote.downloaded) == ['a', 'b', 'chipper', 'perennial']
    assert remote.cloned == ['a-lib']
    ws = umb.Workspace(root)
    assert ws.repo_kind('a') == umb.RepoKind.SNAPSHOT
    assert ws.repo_kind('a-lib') == umb.RepoKind.LIVE
    assert ws.repo_kind('b') == umb.RepoKind.SNAPSHOT
    assert utils.repo_dirs(root) == ['a', 'a-lib', 'b', 'chipper', 'perennial-alias']
    assert ws.read_installed() == ['a']
    npm = [os.path.basename(cwd) for cmd,cwd in remote.calls if cmd[0] == 'npm']
    assert npm == ['chipper', 'perennial-alias']

def test_dependency_union(tmp_path, monkeypatch):
    ''' common ∪ sim ∪ live deps, minus tooling, the sim and its live repo, without duplicates. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_sim_repo(remote, 'sim-x', ['axon', 'scenery', 'chipper', 'sim-x', 'x-live', 'perennial-alias'])
    utils.add_sim_repo(remote, 'x-live', ['shared', 'scenery', 'perennial'])
    utils.write_manifest(tmp_path, [{'sim': 'sim-x', 'liveRepo': 'x-live'}])

    zips = umb.add_sim(['sim-x', '--root', str(tmp_path)])
    assert zips == ['axon', 'joist', 'scenery', 'shared']
    assert len(remote.downloaded) == len(set(remote.downloaded))

def test_live_repo_deps_not_folded(tmp_path, monkeypatch):
    ''' fold_live_repo_deps: false leaves the live repo's own phetLibs out. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_sim_repo(remote, 'sim-x', ['scenery'])
    utils.add_sim_repo(remote, 'x-live', ['shared'])
    utils.write_manifest(tmp_path, [{'sim': 'sim-x', 'liveRepo': 'x-live'}])
    utils.write_file(os.path.join(tmp_path, '.umbrella.yaml'), 'fold_live_repo_deps: false\n')

    zips = umb.add_sim(['sim-x', '--root', str(tmp_path)])
    assert zips == ['axon', 'joist', 'scenery']
    assert 'shared' not in utils.repo_dirs(tmp_path)

def test_unknown_sim_is_live(tmp_path, monkeypatch, capsys):
    ''' Sims missing from sims.json are cloned live. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_sim_repo(remote, 'solo', ['scenery'])
    zips = umb.add_sim(['solo', '--root', str(tmp_path)])
    assert remote.cloned == ['solo']
    assert zips == ['axon', 'joist', 'scenery']
    captured = capsys.readouterr()
    assert 'not in sims.json' in captured.err
    assert 'Done. Live repo: solo. Zip repos: axon, joist, scenery.' in captured.out

def test_malformed_build_json(tmp_path, monkeypatch, capsys):
    ''' A malformed chipper/build.json means no common deps, with a warning. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_tooling(remote, build_json='{"common": {"phetLibs": [')
    utils.add_sim_repo(remote, 'solo', ['scenery'])
    zips = umb.add_sim(['solo', '--root', str(tmp_path)])
    assert zips == ['scenery']
    assert 'could not read chipper/build.json' in capsys.readouterr().err
    assert umb.Workspace(tmp_path).read_installed() == ['solo']

def test_idempotent(tmp_path, monkeypatch):
    ''' Adding the same sim twice fetches nothing new. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_sim_repo(remote, 'solo', ['scenery'])
    umb.add_sim(['solo', '--root', str(tmp_path)])
    fetches = (list(remote.downloaded), list(remote.cloned))
    umb.add_sim(['solo', '--root', str(tmp_path)])
    assert (remote.downloaded, remote.cloned) == fetches
    assert umb.Workspace(tmp_path).read_installed() == ['solo']

def test_live_tooling(tmp_path, monkeypatch):
    ''' tooling_mode: live clones the tooling repos on the tooling branch. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_sim_repo(remote, 'solo')
    utils.write_file(os.path.join(tmp_path, '.umbrella.yaml'), 'tooling_mode: live\n')
    umb.add_sim(['solo', '--root', str(tmp_path)])
    assert remote.cloned == ['chipper', 'perennial', 'solo']
    ws = umb.Workspace(tmp_path)
    assert ws.repo_kind('perennial-alias') == umb.RepoKind.LIVE
    clones = [cmd for cmd,_ in remote.calls if cmd[:2] == ['git', 'clone']]
    assert clones[0][4:6] == ['--branch', ws.config.tooling_branch]

def test_missing_sim_name(tmp_path, monkeypatch):
    utils.install_remote(monkeypatch)
    with pytest.raises(Exception, match='requires a sim name'):
        umb.add_sim(['--root', str(tmp_path)])

def test_dependency_download_failure(tmp_path, monkeypatch):
    ''' A dependency that cannot be downloaded aborts the command before the sim is recorded. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    utils.add_sim_repo(remote, 'solo', ['ghost'])
    with pytest.raises(Exception, match='All download attempts failed for ghost'):
        umb.add_sim(['solo', '--root', str(tmp_path)])
    assert 'ghost' not in utils.repo_dirs(tmp_path)
    assert umb.Workspace(tmp_path).read_installed() == []

def test_remove_sim_prunes(tmp_path, monkeypatch):
    ''' Removing a sim deletes only repos no remaining sim requires. '''
    remote = utils.install_remote(monkeypatch)
    publish(remote, common_deps=['axon'])
    utils.add_sim_repo(remote, 'a', ['b', 'shared'])
    utils.add_sim_repo(remote, 'a-lib')
    utils.add_sim_repo(remote, 'c', ['d', 'shared'])
    utils.write_manifest(tmp_path, [{'sim': 'a', 'liveRepo': 'a-lib'}])
    root = str(tmp_path)
    umb.add_sim(['a', '--root', root])
    umb.add_sim(['c', '--root', root])
    assert utils.repo_dirs(root) == ['a', 'a-lib', 'axon', 'b', 'c', 'chipper', 'd', 'perennial-alias', 'shared']

    removed = umb.remove_sim(['a', '--root', root])
    assert sorted(removed) == ['a', 'a-lib', 'b']
    assert utils.repo_dirs(root) == ['axon', 'c', 'chipper', 'd', 'perennial-alias', 'shared']
    assert umb.list_sims(['--root', root]) == ['c']

    removed = umb.remove_sim(['c', '--root', root])
    assert utils.repo_dirs(root) == ['chipper', 'perennial-alias']
    assert umb.list_sims(['--root', root]) == []

def test_remove_unknown_sim(tmp_path, monkeypatch):
    utils.install_remote(monkeypatch)
    with pytest.raises(Exception, match='is not installed'):
        umb.remove_sim(['nope', '--root', str(tmp_path)])

def test_list_sims_all(tmp_path, monkeypatch, capsys):
    utils.install_remote(monkeypatch)
    utils.write_manifest(tmp_path, [{'sim': 'a'}, {'sim': 'b'}])
    ws = umb.Workspace(tmp_path)
    ws.ensure()
    ws.write_installed(['b', 'z'])
    capsys.readouterr()
    umb.list_sims(['--all', '--root', str(tmp_path)])
    assert capsys.readouterr().out.splitlines() == ['  a', '* b', '* z']

def test_installed_file_format(tmp_path, monkeypatch):
    remote = utils.install_remote(monkeypatch)
    publish(remote)
    for sim in ['zeta', 'alpha']:
        utils.add_sim_repo(remote, sim)
        umb.add_sim([sim, '--root', str(tmp_path)])
    with open(os.path.join(tmp_path, 'installed-sims.json')) as f:
        assert json.load(f) == ['alpha', 'zeta']

if __name__ == "__main__":
    import pytest
    import sys
    if len(sys.argv) > 1:
        rc = pytest.main(args=['-s', '-vv', '-k', sys.argv[1], sys.argv[0]])
    else:
        rc = pytest.main(args=['-vv', sys.argv[0]])
    if rc:
        sys.exit(1)
