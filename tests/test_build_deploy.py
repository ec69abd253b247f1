import pytest

import build_deploy


@pytest.fixture
def project(tmp_path, monkeypatch):
    client_dir = tmp_path / 'client'
    landing = tmp_path / 'landing-page'
    (landing / 'assets').mkdir(parents=True)
    (landing / 'index.html').write_text('<h1>Igbaja</h1>')
    (landing / 'assets' / 'logo.svg').write_text('<svg/>')
    monkeypatch.setattr(build_deploy, 'CLIENT_DIR', str(client_dir))
    monkeypatch.setattr(build_deploy, 'LANDING_DIR', str(landing))
    monkeypatch.setattr(build_deploy, 'DIST_DIR', str(tmp_path / 'dist'))
    return tmp_path


def test_build_assembles_dist(project, capsys):
    build_output = project / 'client' / 'build' / 'static'
    build_output.mkdir(parents=True)
    (project / 'client' / 'build' / 'index.html').write_text('<div id="root"></div>')
    (build_output / 'main.js').write_text('console.log(1)')
    # Stale output is replaced
    (project / 'dist').mkdir()
    (project / 'dist' / 'old.txt').write_text('old')

    build_deploy.build(skip_build=True)

    dist = project / 'dist'
    assert (dist / 'index.html').read_text() == '<h1>Igbaja</h1>'
    assert (dist / 'assets' / 'logo.svg').exists()
    assert (dist / 'dashboard' / 'index.html').exists()
    assert (dist / 'dashboard' / 'static' / 'main.js').exists()
    assert not (dist / 'old.txt').exists()
    assert '└── index.html' in capsys.readouterr().out


def test_missing_client_build_fails(project, monkeypatch):
    with pytest.raises(FileNotFoundError):
        build_deploy.build(skip_build=True)

    monkeypatch.setattr('sys.argv', ['build_deploy.py', '--skip-build'])
    with pytest.raises(SystemExit) as exc:
        build_deploy.main()
    assert exc.value.code == 1
