from __future__ import annotations

import argparse
import asyncio
import io
import json
import tarfile

import httpx
import pytest

from cloudron_cli import appstore
from cloudron_cli.errors import BuildError, CloudronError, ManifestNotFoundError

from conftest import ScriptedPrompt


def write_app(directory, manifest=None, dockerfile="FROM cloudron/base:0.10.0\n"):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "CloudronManifest.json").write_text(
        json.dumps(manifest or {"id": "io.example.app", "version": "1.0.0"})
    )
    (directory / "Dockerfile").write_text(dockerfile)
    return directory


def test_locate_manifest_searches_parents(tmp_path):
    root = write_app(tmp_path / "app")
    nested = root / "src" / "lib"
    nested.mkdir(parents=True)

    assert appstore.locate_manifest(nested) == (root / "CloudronManifest.json").resolve()


def test_load_manifest_without_manifest(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(ManifestNotFoundError):
        appstore.load_manifest()


@pytest.mark.parametrize(
    ("dockerfile", "message"),
    [
        ("FROM cloudron/base:not-a-version\n", "Invalid base image version"),
        ("FROM ubuntu:16.04\n", "Base image must be cloudron/base:0.5.0"),
    ],
)
def test_verify_dockerfile_rejects(tmp_path, dockerfile, message):
    path = tmp_path / "Dockerfile"
    path.write_text(dockerfile)
    with pytest.raises(BuildError, match=message):
        appstore.verify_dockerfile(path)


def test_verify_dockerfile_accepts_base_image(tmp_path):
    path = tmp_path / "Dockerfile"
    path.write_text("# comment\nFROM cloudron/base:0.10.0\nRUN true\n")
    appstore.verify_dockerfile(path)


def test_pack_source_honours_dockerignore(tmp_path):
    source = write_app(tmp_path / "app")
    (source / ".dockerignore").write_text("# comment\nnode_modules\n*.log\n")
    (source / ".env").write_text("KEY=1\n")
    (source / "debug.log").write_text("noise\n")
    (source / "node_modules").mkdir()
    (source / "node_modules" / "dep.js").write_text("\n")

    archive = appstore.pack_source(source)

    with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
        names = {name.removeprefix("./") for name in tar.getnames()}
    assert {"CloudronManifest.json", "Dockerfile", ".env", ".dockerignore"} <= names
    assert "debug.log" not in names
    assert not any(name.startswith("node_modules") for name in names)


def test_pretty_date():
    assert appstore.pretty_date("not a date") == "not a date"
    assert appstore.pretty_date("2000-01-01T00:00:00Z").endswith("days ago")


def test_select_build_latest(config, console):
    config.add_build("io.example.app", "b1")
    config.add_build("io.example.app", "b2")

    build = asyncio.run(appstore.select_build(config, console, ScriptedPrompt(), "io.example.app", latest=True))

    assert build.id == "b2"


def test_select_build_prompts_until_valid(config, console):
    config.add_build("io.example.app", "b1")
    config.add_build("io.example.app", "b2")
    prompt = ScriptedPrompt(["5", "x", "0"])

    build = asyncio.run(appstore.select_build(config, console, prompt, "io.example.app", latest=False))

    assert build.id == "b1"
    assert console.out.count("Invalid selection") == 2
    assert prompt.questions == ["Choose build [0-1]: "] * 3


def test_select_build_without_builds(config, console):
    with pytest.raises(BuildError, match="No build found"):
        asyncio.run(appstore.select_build(config, console, ScriptedPrompt(), "io.example.app", latest=True))


def test_select_image_prefers_manifest_image(config, console):
    manifest = {"id": "io.example.app", "dockerImage": "registry/app:1"}
    image = asyncio.run(appstore.select_image(config, console, ScriptedPrompt(), manifest, latest=True))
    assert image == "registry/app:1"


def test_select_image_rejects_failed_build(config, console):
    config.add_build("io.example.app", "b1")
    with pytest.raises(BuildError, match="has no image"):
        asyncio.run(appstore.select_image(config, console, ScriptedPrompt(), {"id": "io.example.app"}, latest=True))


def test_submit_build_too_large(make_context):
    ctx = make_context(lambda request: httpx.Response(413))
    with pytest.raises(BuildError, match="too large"):
        asyncio.run(appstore.submit_build(ctx.appstore, "io.example.app", b"archive"))


def test_build_command(tmp_path, monkeypatch, config, console, make_context):
    source = write_app(tmp_path / "app")
    monkeypatch.chdir(source)
    config.appstore.token = "store-token"
    config.poll_interval = 0
    statuses = ["building", "success"]
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        assert request.url.params["accessToken"] == "store-token"
        if request.method == "POST":
            assert request.url.params["noCache"] == "true"
            assert b'name="appId"' in request.content
            assert b'name="sourceArchive"' in request.content
            return httpx.Response(201, json={"id": "b1"})
        if request.url.path.endswith("/logstream"):
            return httpx.Response(200, content=b'data: {"stream": "Step 1/1\\n"}\n\n')
        return httpx.Response(200, json={"status": statuses.pop(0), "dockerImage": "registry/app:b1"})

    ctx = make_context(handler)
    args = argparse.Namespace(no_cache=True, raw=False)

    assert asyncio.run(appstore.build(ctx, args)) == 0

    assert requests == [
        ("POST", "/api/v1/developers/builds"),
        ("GET", "/api/v1/developers/builds/b1/logstream"),
        ("GET", "/api/v1/developers/builds/b1"),
        ("GET", "/api/v1/developers/builds/b1"),
    ]
    assert config.latest_build("io.example.app").docker_image == "registry/app:b1"
    assert "Step 1/1\n" in console.out
    assert console.out.endswith("Success\n")


def test_build_command_reports_failed_build(tmp_path, monkeypatch, config, make_context):
    monkeypatch.chdir(write_app(tmp_path / "app"))

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "b1"})
        if request.url.path.endswith("/logstream"):
            return httpx.Response(200, content=b'data: {"error": "compile failed"}\n\n')
        return httpx.Response(200, json={"status": "error"})

    ctx = make_context(handler)
    with pytest.raises(BuildError, match="could not be built"):
        asyncio.run(appstore.build(ctx, argparse.Namespace(no_cache=False, raw=False)))

    assert config.latest_build("io.example.app").docker_image is None


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

PUBLISHED_MANIFEST = {
    "id": "io.example.app",
    "version": "1.0.0",
    "title": "Example",
    "description": "file://DESCRIPTION.md",
    "changelog": "file://CHANGELOG",
    "icon": "file://logo.png",
}


@pytest.fixture
def published_app(tmp_path, monkeypatch, config):
    source = write_app(tmp_path / "app", manifest=PUBLISHED_MANIFEST)
    (source / "DESCRIPTION.md").write_text("An example app.\n")
    (source / "CHANGELOG").write_text("[1.0.0]\n* Second fix\n\n* First fix\n[0.9.0]\n* Initial\n")
    (source / "logo.png").write_bytes(b"\x89PNG")
    monkeypatch.chdir(source)
    config.appstore.token = "store-token"
    config.add_build("io.example.app", "b1")
    config.update_build("io.example.app", "b1", "registry/app:b1")
    return source


def test_parse_changelog(tmp_path):
    path = tmp_path / "CHANGELOG"
    path.write_text("[1.1.0]\n* New\n\n[1.0.0]\n* Second fix\n\n* First fix\n[0.9.0]\n* Initial\n")

    assert appstore.parse_changelog(path, "1.0.0") == "* Second fix\n* First fix"
    assert appstore.parse_changelog(path, "2.0.0") == ""


def test_resolve_manifest_files_rejects_missing_icon(tmp_path):
    with pytest.raises(CloudronError, match="icon not found"):
        appstore.resolve_manifest_files({"id": "io.example.app", "icon": "logo.png"}, tmp_path)


def test_publish_uploads_latest_build(published_app, console, make_context):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        assert request.url.params["accessToken"] == "store-token"
        if request.url.path == "/api/v1/developers/apps":
            assert json.loads(request.content) == {"id": "io.example.app"}
            return httpx.Response(201, json={})
        if request.url.path.endswith("/submit"):
            return httpx.Response(200, json={})
        assert b'name="buildId"' in request.content
        assert b"An example app." in request.content
        assert b"* Second fix\\n* First fix" in request.content
        assert b'name="icon"; filename="logo.png"' in request.content
        return httpx.Response(204)

    ctx = make_context(handler)

    assert asyncio.run(appstore.publish(ctx, argparse.Namespace(force=False, submit=True))) == 0

    assert requests == [
        ("POST", "/api/v1/developers/apps"),
        ("POST", "/api/v1/developers/apps/io.example.app/versions"),
        ("POST", "/api/v1/developers/apps/io.example.app/versions/1.0.0/submit"),
    ]
    assert "New application added to the appstore with id io.example.app." in console.out
    assert "Publishing io.example.app@1.0.0 for testing with build b1." in console.out
    assert "cloudron install --appstore-id io.example.app@1.0.0" in console.out
    assert "https://my.example.com/#/appstore/io.example.app?version=1.0.0" in console.out
    assert console.out.endswith("App submitted for review.\nYou will receive an email when approved.\n")


def test_publish_force_updates_existing_version(published_app, console, make_context):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append((request.method, request.url.path))
        if request.url.path == "/api/v1/developers/apps":
            return httpx.Response(409, json={"message": "exists"})
        return httpx.Response(204)

    ctx = make_context(handler)
    asyncio.run(appstore.publish(ctx, argparse.Namespace(force=True, submit=False)))

    assert requests[1] == ("PUT", "/api/v1/developers/apps/io.example.app/versions/1.0.0")
    assert "New application added" not in console.out


def test_publish_requires_a_built_image(published_app, config, make_context):
    config.add_build("io.example.app", "b2")
    ctx = make_context(lambda request: httpx.Response(409))

    with pytest.raises(BuildError, match="please run `cloudron build` first"):
        asyncio.run(appstore.publish(ctx, argparse.Namespace(force=False, submit=False)))


def test_versions_table(console, make_context):
    entries = [
        {"id": "io.example.app", "creationDate": "2017-01-01", "publishState": "published", "manifest": {"version": "0.9.0"}},
        {
            "id": "io.example.app",
            "creationDate": "2017-02-01",
            "publishState": "testing",
            "manifest": {"version": "1.0.0", "title": "Example", "tagline": "Examples"},
        },
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/developers/apps/io.example.app/versions"
        return httpx.Response(200, json={"versions": entries})

    ctx = make_context(handler)
    asyncio.run(appstore.versions(ctx, argparse.Namespace(app="io.example.app", apps=False, raw=False)))

    lines = console.out.splitlines()
    assert lines[:3] == ["id: io.example.app", "title: Example", "tagline: Examples"]
    table = lines[lines.index("") + 1:]
    assert table[0].split() == ["Version", "Creation", "Date", "Publish", "state"]
    assert table[2].split()[0] == "1.0.0"
    assert table[3].split()[0] == "0.9.0"


def test_versions_raw_and_empty(console, make_context):
    entries = [{"id": "io.example.app", "manifest": {"version": "1.0.0"}}]
    ctx = make_context(lambda request: httpx.Response(200, json={"versions": entries}))
    asyncio.run(appstore.versions(ctx, argparse.Namespace(app="io.example.app", apps=False, raw=True)))
    assert json.loads(console.out) == entries

    ctx = make_context(lambda request: httpx.Response(200, json={"versions": []}))
    asyncio.run(appstore.versions(ctx, argparse.Namespace(app="io.example.app", apps=False, raw=False)))
    assert console.out.endswith("No versions found.\n")


def test_versions_lists_published_apps(console, make_context):
    apps = [{"id": "io.example.app", "publishState": "published", "manifest": {"title": "Example", "version": "1.0.0"}}]

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/developers/apps"
        assert request.url.params["per_page"] == "100"
        return httpx.Response(200, json={"apps": apps})

    ctx = make_context(handler)
    asyncio.run(appstore.versions(ctx, argparse.Namespace(app=None, apps=True, raw=False)))

    assert "io.example.app  Example  1.0.0" in console.out


def test_unpublish_version_after_confirmation(published_app, console, make_context):
    deleted = []

    def handler(request: httpx.Request) -> httpx.Response:
        deleted.append((request.method, request.url.path))
        return httpx.Response(204)

    prompt = ScriptedPrompt(["y"])
    ctx = make_context(handler, prompt=prompt)
    asyncio.run(appstore.unpublish(ctx, argparse.Namespace(app=None, force=False)))

    assert deleted == [("DELETE", "/api/v1/developers/apps/io.example.app/versions/1.0.0")]
    assert prompt.questions == ["Really do this? [y/N]: "]
    assert console.out.endswith("version unpublished.\n")


def test_unpublish_declined(published_app, make_context):
    ctx = make_context(lambda request: pytest.fail("nothing should be deleted"), prompt=ScriptedPrompt(["n"]))
    assert asyncio.run(appstore.unpublish(ctx, argparse.Namespace(app=None, force=False))) == 0


def test_unpublish_whole_app(console, make_context):
    deleted = []

    def handler(request: httpx.Request) -> httpx.Response:
        deleted.append(request.url.path)
        return httpx.Response(204)

    ctx = make_context(handler)
    asyncio.run(appstore.unpublish(ctx, argparse.Namespace(app="io.example.app", force=True)))

    assert deleted == ["/api/v1/developers/apps/io.example.app"]
    assert console.out == "Unpublishing io.example.app\nApp unpublished.\n"
