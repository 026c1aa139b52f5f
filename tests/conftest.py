# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Shared fixtures: a seeded random source, layer tar factories and in-memory
stand-ins for the Docker daemon and a registry.
"""
import gzip
import hashlib
import io
import json
import os
import random
import string
import tarfile

import docker
import pytest
from urllib.error import HTTPError

from ocimutate.CONFIG.settings import Settings
from ocimutate.REGISTRY.registry_client import (
    DOCKER_CONFIG,
    DOCKER_LAYER_GZIP,
    DOCKER_MANIFEST_V2,
    ManifestResponse,
)

DEFAULT_SEED = 20240101


def sha256(data):
    return "sha256:" + hashlib.sha256(data).hexdigest()


def make_tar(files):
    """Build a tar with fixed metadata from {name: bytes}."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for name, content in sorted(files.items()):
            info = tarfile.TarInfo(name=name)
            info.size = len(content)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def gzip_bytes(data):
    buf = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=buf, mtime=0) as gz:
        gz.write(data)
    return buf.getvalue()


def http_error(url, code, message="denied"):
    return HTTPError(url, code, message, {}, io.BytesIO(message.encode()))


@pytest.fixture
def rng():
    """Random source seeded from OCIMUTATE_TEST_SEED for reproducible runs."""
    return random.Random(int(os.environ.get("OCIMUTATE_TEST_SEED", DEFAULT_SEED)))


@pytest.fixture
def rand_string(rng):
    def _rand(length=10):
        return "".join(rng.choice(string.ascii_lowercase + string.digits) for _ in range(length))
    return _rand


@pytest.fixture
def layer_factory(tmp_path, rand_string):
    """Write a single-file layer tar and return its path."""
    def _make(name=None, content=None):
        name = name or f"new-layer-{rand_string()}.txt"
        content = content if content is not None else f"new-layer-{rand_string()}".encode()
        path = tmp_path / f"layer-{rand_string()}.tar"
        path.write_bytes(make_tar({name: content}))
        return str(path)
    return _make


@pytest.fixture
def settings(tmp_path):
    return Settings(work_dir=tmp_path / "work", default_platform="linux/amd64")


@pytest.fixture
def base_content():
    """Raw config and uncompressed layer tars of a small two-layer base image."""
    layers = [
        make_tar({"bin/sh": b"#!shell"}),
        make_tar({"etc/passwd": b"root:x:0:0::/root:/bin/sh\n"}),
    ]
    config = {
        "architecture": "amd64",
        "os": "linux",
        "created": "2023-05-19T20:19:23.000000000Z",
        "docker_version": "20.10.23",
        "container": "4c1a6b3a",
        "container_config": {"Cmd": ["/bin/sh", "-c", "#(nop) CMD [\"sh\"]"]},
        "config": {
            "Env": ["PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"],
            "Cmd": ["sh"],
            "Labels": None,
            "User": "",
        },
        "rootfs": {"type": "layers", "diff_ids": [sha256(layer) for layer in layers]},
        "history": [
            {"created": "2023-05-19T20:19:22Z", "created_by": "ADD file:1 in /"},
            {"created": "2023-05-19T20:19:23Z", "created_by": "ADD file:2 in /"},
        ],
    }
    return config, layers


# ---------------------------------------------------------------------------
# Registry stand-in


class FakeRegistryClient:
    """In-memory registry speaking the subset of RegistryClient RemoteBackend uses."""

    def __init__(self, settings=None):
        self.settings = settings or Settings(default_platform="linux/amd64")
        self.blobs = {}
        self.manifests = {}
        self.uploads = []
        self.mounts = []
        self.reject_phase = None
        self.reject_names = set()

    def _repo(self, ref):
        return (ref.registry, ref.repository)

    def seed_image(self, ref, config, layers):
        """Store a base image built from a raw config and uncompressed layer tars."""
        repo = self._repo(ref)
        store = self.blobs.setdefault(repo, {})
        descriptors = []
        for layer in layers:
            blob = gzip_bytes(layer)
            store[sha256(blob)] = blob
            descriptors.append({"mediaType": DOCKER_LAYER_GZIP, "size": len(blob), "digest": sha256(blob)})
        config_bytes = json.dumps(config).encode()
        store[sha256(config_bytes)] = config_bytes
        manifest = {
            "schemaVersion": 2,
            "mediaType": DOCKER_MANIFEST_V2,
            "config": {"mediaType": DOCKER_CONFIG, "size": len(config_bytes), "digest": sha256(config_bytes)},
            "layers": descriptors,
        }
        raw = json.dumps(manifest, indent=3).encode()
        digest = sha256(raw)
        self.manifests[repo + (ref.identifier,)] = raw
        self.manifests[repo + (digest,)] = raw
        return digest

    def replace_manifest(self, ref, document):
        """Serve `document` for the tag of `ref`; returns its digest."""
        raw = json.dumps(document, indent=3).encode()
        self.manifests[self._repo(ref) + (ref.identifier,)] = raw
        self.manifests[self._repo(ref) + (sha256(raw),)] = raw
        return sha256(raw)

    def get_manifest(self, ref):
        raw = self.manifests.get(self._repo(ref) + (ref.identifier,))
        if raw is None:
            raise http_error(ref.full_name, 404, "manifest unknown")
        return ManifestResponse(media_type=json.loads(raw)["mediaType"], raw=raw, digest=sha256(raw))

    def get_config(self, ref, manifest):
        return self.fetch_blob(ref, manifest["config"]["digest"])

    def fetch_blob(self, ref, digest):
        blob = self.blobs.get(self._repo(ref), {}).get(digest)
        if blob is None:
            raise http_error(ref.full_name, 404, "blob unknown")
        return blob

    def blob_exists(self, ref, digest):
        return digest in self.blobs.get(self._repo(ref), {})

    def mount_blob(self, ref, digest, from_repository):
        source = self.blobs.get((ref.registry, from_repository), {})
        if digest not in source:
            return False
        self.blobs.setdefault(self._repo(ref), {})[digest] = source[digest]
        self.mounts.append(digest)
        return True

    def upload_blob(self, ref, digest, data, size):
        if self.reject_phase == "blob":
            raise http_error(ref.full_name, 403, "quota exceeded")
        content = data.read() if hasattr(data, "read") else data
        assert len(content) == size
        assert sha256(content) == digest
        self.blobs.setdefault(self._repo(ref), {})[digest] = content
        self.uploads.append(digest)
        return digest

    def put_manifest(self, ref, media_type, payload):
        if self.reject_phase == "manifest" or ref.full_name in self.reject_names:
            raise http_error(ref.full_name, 401, "unauthorized")
        document = json.loads(payload)
        store = self.blobs.get(self._repo(ref), {})
        for descriptor in [document["config"]] + document["layers"]:
            if descriptor.get("urls"):
                continue
            if descriptor["digest"] not in store:
                raise http_error(ref.full_name, 400, "blob unknown")
        self.manifests[self._repo(ref) + (ref.identifier,)] = payload
        self.manifests[self._repo(ref) + (sha256(payload),)] = payload
        return sha256(payload)

    def manifest_digest(self, ref):
        raw = self.manifests.get(self._repo(ref) + (ref.identifier,))
        return sha256(raw) if raw is not None else None

    def delete_manifest(self, ref, digest):
        repo = self._repo(ref)
        for key in [key for key, raw in self.manifests.items() if key[:2] == repo and sha256(raw) == digest]:
            del self.manifests[key]

    def pushed_config(self, ref):
        """Config document behind a pushed manifest."""
        manifest = json.loads(self.get_manifest(ref).raw)
        return json.loads(self.fetch_blob(ref, manifest["config"]["digest"]))


@pytest.fixture
def fake_registry(settings):
    return FakeRegistryClient(settings)


# ---------------------------------------------------------------------------
# Docker daemon stand-in


def build_archive(config_bytes, layers):
    manifest = [{
        "Config": f"{hashlib.sha256(config_bytes).hexdigest()}.json",
        "RepoTags": None,
        "Layers": [f"{hashlib.sha256(layer).hexdigest()}/layer.tar" for layer in layers],
    }]
    files = {manifest[0]["Config"]: config_bytes, "manifest.json": json.dumps(manifest).encode()}
    for path, layer in zip(manifest[0]["Layers"], layers):
        files[path] = layer
    return make_tar(files)


class FakeImage:
    def __init__(self, archive, config_bytes, diff_ids):
        self.id = sha256(config_bytes)
        self.archive = archive
        self.exports = 0
        self.attrs = {"Id": self.id, "RootFS": {"Type": "layers", "Layers": diff_ids}}

    def save(self, chunk_size=2097152, named=False):
        self.exports += 1
        for start in range(0, len(self.archive), 1024):
            yield self.archive[start:start + 1024]


class FakeImages:
    """
    Image store. Like the daemon, load reuses layers it already holds for
    paths the archive lists without carrying, unless require_layer_files is set.
    """

    def __init__(self):
        self.by_id = {}
        self.tags = {}
        self.layers = {}
        self.pullable = {}
        self.pulls = []
        self.require_layer_files = False

    def _image_from_archive(self, archive):
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            entry = json.load(tar.extractfile("manifest.json"))[0]
            config_bytes = tar.extractfile(entry["Config"]).read()
            diff_ids = json.loads(config_bytes)["rootfs"]["diff_ids"]
            members = set(tar.getnames())
            layers = []
            for path, diff_id in zip(entry["Layers"], diff_ids):
                if path in members:
                    layers.append(tar.extractfile(path).read())
                elif diff_id in self.layers and not self.require_layer_files:
                    layers.append(self.layers[diff_id])
                else:
                    raise docker.errors.APIError(
                        f"open /var/lib/docker/tmp/docker-import/{path}: no such file or directory"
                    )
        for layer in layers:
            self.layers[sha256(layer)] = layer
        return FakeImage(build_archive(config_bytes, layers), config_bytes, [sha256(layer) for layer in layers])

    def get(self, name):
        image_id = self.tags.get(name, name)
        if image_id not in self.by_id:
            raise docker.errors.ImageNotFound(f"No such image: {name}")
        return self.by_id[image_id]

    def pull(self, name):
        if name not in self.pullable:
            raise docker.errors.APIError(f"pull access denied for {name}")
        self.pulls.append(name)
        image = self._image_from_archive(self.pullable[name])
        self.by_id[image.id] = image
        self.tags[name] = image.id
        return image

    def load(self, data):
        image = self._image_from_archive(data.read())
        self.by_id[image.id] = image
        return [image]

    def remove(self, image, force=False, noprune=False):
        if image in self.tags:
            del self.tags[image]
        elif image in self.by_id:
            del self.by_id[image]
        else:
            raise docker.errors.ImageNotFound(f"No such image: {image}")


class FakeAPI:
    def __init__(self, images):
        self.images = images
        self.fail_tags = set()

    def tag(self, image, repository, tag=None, force=False):
        name = f"{repository}:{tag}"
        if name in self.fail_tags:
            raise docker.errors.APIError(f"cannot tag {name}")
        self.images.tags[name] = image
        return True


class FakeDockerClient:
    def __init__(self):
        self.images = FakeImages()
        self.api = FakeAPI(self.images)

    def info(self):
        return {"OSType": "linux", "Architecture": "x86_64"}

    def add_pullable(self, name, config, layers):
        self.images.pullable[name] = build_archive(json.dumps(config).encode(), layers)

    def loaded_config(self, name):
        image = self.images.get(name)
        with tarfile.open(fileobj=io.BytesIO(image.archive)) as tar:
            entry = json.load(tar.extractfile("manifest.json"))[0]
            return tar.extractfile(entry["Config"]).read()


@pytest.fixture
def fake_docker():
    return FakeDockerClient()


@pytest.fixture
def mutations(layer_factory, rand_string):
    """One fixed mutation sequence, applied identically to every image."""
    layers = [layer_factory(), layer_factory()]
    label = (f"label-key-{rand_string()}", f"label-val-{rand_string()}")
    env = (f"env_key_{rand_string()}", f"env-val-{rand_string()}")
    working_dir = f"/working-dir-{rand_string()}"

    def _apply(image):
        for layer in layers:
            image.add_layer(layer)
        image.set_label(*label)
        image.set_env(*env)
        image.set_entrypoint("some", "entrypoint")
        image.set_cmd("some", "cmd")
        image.set_working_dir(working_dir)
        return image
    return _apply
