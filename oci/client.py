# SPDX-FileCopyrightText: 2024 SAP SE or an SAP affiliate company and Gardener contributors
#
# SPDX-License-Identifier: Apache-2.0

import base64
import dataclasses
import datetime
import enum
import json
import logging
import os
import tempfile
import threading
import typing
import urllib.parse

import dacite
import dateutil.parser
import requests
import requests.adapters
import requests.auth
import www_authenticate

import oci.auth as oa
import oci.model as om
import oci.retry
import oci.util

urljoin = oci.util.urljoin

logger = logging.getLogger(__name__)

oci_request_logger = logging.getLogger('oci.client.request_logger')
oci_request_logger.setLevel(logging.DEBUG)

USER_AGENT = 'nydusify (python3)'


def _append_b64_padding_if_missing(b64_str: str):
    if b64_str[-1] == '=':
        return b64_str

    if (mod4 := len(b64_str) % 4) == 2:
        return b64_str + '=' * 2
    elif mod4 == 3:
        return b64_str + '='
    elif mod4 == 0:
        return b64_str
    else:
        raise ValueError('this is a bug')


class AuthMethod(enum.Enum):
    BEARER = 'bearer'
    BASIC = 'basic'


@dataclasses.dataclass
class OauthToken:
    token: str
    scope: str
    expires_in: int = None
    issued_at: str = None

    def valid(self):
        issued_at = dateutil.parser.isoparse(self.issued_at)
        # pessimistically deduct 30s, to be on the safe side
        expiry_date = issued_at + datetime.timedelta(seconds=self.expires_in - 30)

        now = datetime.datetime.now(tz=datetime.timezone.utc)
        return now < expiry_date

    def __post_init__(self):
        if not self.issued_at:
            self.issued_at = datetime.datetime.now(tz=datetime.timezone.utc).isoformat()
        if self.expires_in:
            return

        # check if format seems to be jwt
        if self.token.count('.') >= 2:
            # JWT by convention has unpadded base64
            payload = _append_b64_padding_if_missing(b64_str=self.token.split('.')[1])
            parsed = json.loads(base64.urlsafe_b64decode(payload.encode('utf-8')))

            if (exp := parsed.get('exp')) and (iat := parsed.get('iat')):
                self.expires_in = exp - iat
                self.issued_at = datetime.datetime.fromtimestamp(iat, tz=datetime.timezone.utc)\
                    .isoformat()
                return

        # hard-code a value in the future since it is not given
        self.expires_in = datetime.timedelta(minutes=10).seconds


class OauthTokenCache:
    def __init__(self):
        self.tokens = {} # {scope: token}
        self.auth_methods = {} # {netloc: method}
        self._token_access_lock = threading.Lock()

    def token(self, scope: str) -> OauthToken | None:
        with self._token_access_lock:
            # purge expired tokens
            self.tokens = {s:t for s,t in self.tokens.items() if t.valid()}

            return self.tokens.get(scope)

    def set_token(self, token: OauthToken):
        if not token.valid():
            raise ValueError(f'token expired: {token=}')

        with self._token_access_lock:
            self.tokens[token.scope] = token

    def set_auth_method(
        self,
        image_reference: om.OciImageReference,
        auth_method: AuthMethod,
    ):
        self.auth_methods[image_reference.netloc] = auth_method

    def auth_method(self, image_reference: om.OciImageReference) -> AuthMethod | None:
        return self.auth_methods.get(image_reference.netloc)


class OciRoutes:
    def __init__(
        self,
        plain_http: bool=False,
    ):
        self.scheme = 'http' if plain_http else 'https'

    def base_api_url(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
    ) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        return urljoin(f'{self.scheme}://{image_reference.netloc}', 'v2') + '/'

    def artifact_base_url(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
    ) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        return urljoin(
            self.base_api_url(image_reference=image_reference),
            image_reference.name,
        )

    def _blobs_url(self, image_reference: om.OciImageReference) -> str:
        return urljoin(
            self.artifact_base_url(image_reference),
            'blobs',
        )

    def uploads_url(self, image_reference: om.OciImageReference) -> str:
        return urljoin(
            self._blobs_url(image_reference),
            'uploads',
        ) + '/'

    def mount_blob_url(
        self,
        image_reference: om.OciImageReference,
        digest: str,
        source_image_reference: om.OciImageReference,
    ) -> str:
        query = urllib.parse.urlencode({
            'mount': digest,
            'from': source_image_reference.name,
        })
        return self.uploads_url(image_reference=image_reference) + '?' + query

    def blob_url(self, image_reference: om.OciImageReference, digest: str):
        return urljoin(
            self._blobs_url(image_reference=image_reference),
            digest
        )

    def manifest_url(self, image_reference: om.OciImageReference) -> str:
        if not image_reference.has_tag:
            raise ValueError(f'{image_reference=} does not seem to contain a tag')

        return urljoin(
            self.artifact_base_url(image_reference=image_reference),
            'manifests',
            image_reference.tag,
        )


def _scope(image_reference: om.OciImageReference, action: str):
    # action = 'pull' # | pull,push | catalog
    return f'repository:{image_reference.name}:{action}'


class Client:
    def __init__(
        self,
        credentials_lookup: oa.credentials_lookup=oa.anonymous_credentials_lookup,
        routes: OciRoutes=None,
        disable_tls_validation: bool=False,
        timeout_seconds: int=None,
        session: requests.Session=None,
        cancel: oci.retry.CancelToken=None,
    ):
        '''
        client for the OCI-distribution-API

        disable_tls_validation: skip verification of server-certificates ("insecure" registries)
        cancel: if passed, pending requests are refused, and the underlying session is closed
          (thus aborting in-flight requests) once the token is cancelled
        '''
        self.credentials_lookup = credentials_lookup
        self.token_cache = OauthTokenCache()
        if not session:
            session = requests.Session()
            adapter = requests.adapters.HTTPAdapter(
                max_retries=oci.retry.LoggingRetry(),
            )
            session.mount('http://', adapter)
            session.mount('https://', adapter)
        self.session = session
        self.routes = routes or OciRoutes()
        self.disable_tls_validation = disable_tls_validation

        if timeout_seconds:
            timeout_seconds = int(timeout_seconds)
        self.timeout_seconds = timeout_seconds

        self.cancel = cancel
        if cancel:
            cancel.on_cancel(self.session.close)

    def _authenticate(
        self,
        image_reference: om.OciImageReference,
        scope: str,
    ):
        cached_auth_method = self.token_cache.auth_method(image_reference=image_reference)
        if cached_auth_method is AuthMethod.BASIC:
            return # basic-auth does not require any additional preliminary steps
        if cached_auth_method is AuthMethod.BEARER and self.token_cache.token(scope=scope):
            return # no re-auth required, yet

        if 'push' in scope:
            privileges = oa.Privileges.READWRITE
        else:
            privileges = oa.Privileges.READONLY

        oci_creds = self.credentials_lookup(
            image_reference=str(image_reference),
            privileges=privileges,
            absent_ok=True,
        )

        if not oci_creds:
            logger.debug(f'no credentials for {image_reference=} - attempting anonymous-auth')

        res = self.session.get(
            url=self.routes.base_api_url(image_reference=image_reference),
            verify=not self.disable_tls_validation,
            timeout=self.timeout_seconds,
        )

        auth_challenge = www_authenticate.parse(res.headers.get('www-authenticate', ''))

        # fallback to basic-auth if endpoints does not state what it wants
        if 'basic' in auth_challenge or not auth_challenge:
            self.token_cache.set_auth_method(
                image_reference=image_reference,
                auth_method=AuthMethod.BASIC,
            )
            return # no additional preliminary steps required for basic-auth
        elif 'bearer' in auth_challenge:
            bearer = auth_challenge['bearer']
            service = bearer.get('service')
            self.token_cache.set_auth_method(
                image_reference=image_reference,
                auth_method=AuthMethod.BEARER,
            )
        else:
            raise NotImplementedError(f'did not understand {auth_challenge=}')

        query = {'scope': scope}
        if service:
            query['service'] = service
        realm = bearer['realm'] + '?' + urllib.parse.urlencode(query)

        if oci_creds:
            auth = requests.auth.HTTPBasicAuth(
              username=oci_creds.username,
              password=oci_creds.password,
            )
        else:
            auth = None

        res = self.session.get(
            url=realm,
            verify=not self.disable_tls_validation,
            auth=auth,
            timeout=self.timeout_seconds,
        )

        if not res.ok:
            logger.warning(
                f'rq against {realm=} failed: {res.status_code=} {res.reason=} {res.content=}'
            )

        res.raise_for_status()

        token_dict = res.json()
        # some token-servers return `access_token` instead of `token`
        if not 'token' in token_dict and 'access_token' in token_dict:
            token_dict['token'] = token_dict['access_token']
        token_dict['scope'] = scope

        token = dacite.from_dict(
            data=token_dict,
            data_class=OauthToken,
        )

        self.token_cache.set_token(token)

    def _request(
        self,
        url: str,
        image_reference: om.OciImageReference,
        scope: str,
        method: str='GET',
        headers: dict=None,
        raise_for_status=True,
        warn_if_not_ok=True,
        **kwargs,
    ) -> requests.Response:
        if self.cancel:
            self.cancel.raise_if_cancelled()

        if not 'timeout' in kwargs and self.timeout_seconds:
            kwargs['timeout'] = self.timeout_seconds

        self._authenticate(
            image_reference=image_reference,
            scope=scope,
        )
        headers = headers or {}
        headers['User-Agent'] = USER_AGENT
        auth = None

        if self.token_cache.auth_method(image_reference=image_reference) is AuthMethod.BASIC:
            if 'push' in scope.split(':')[-1]:
                privileges = oa.Privileges.READWRITE
            else:
                privileges = oa.Privileges.READONLY

            if oci_creds := self.credentials_lookup(
                image_reference=str(image_reference),
                privileges=privileges,
                absent_ok=True,
            ):
                auth = oci_creds.username, oci_creds.password
        else:
            headers = {
              'Authorization': f'Bearer {self.token_cache.token(scope=scope).token}',
              **headers,
            }

        oci_request_logger.debug(
            msg=f'oci request sent {method=} {url=}',
            extra={
                'method': method,
                'url': url,
            },
        )

        res = self.session.request(
            method=method,
            url=url,
            auth=auth,
            headers=headers,
            verify=not self.disable_tls_validation,
            **kwargs,
        )
        if not res.ok and warn_if_not_ok:
            logger.warning(
                f'rq against {url=} failed {res.status_code=} {res.reason=} {method=}'
            )

        if raise_for_status:
            res.raise_for_status()

        return res

    def manifest_raw(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        absent_ok: bool=False,
        accept: str=None,
    ) -> requests.Response | None:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        scope = _scope(image_reference=image_reference, action='pull')

        # be backards-compatible, and also accept (legacy) docker-mimetype
        if not accept:
            accept = om.MimeTypes.single_image

        try:
            res = self._request(
                url=self.routes.manifest_url(image_reference=image_reference),
                image_reference=image_reference,
                scope=scope,
                warn_if_not_ok=not absent_ok,
                headers={
                    'Accept': accept,
                },
            )
        except requests.exceptions.HTTPError as he:
            if he.response.status_code == 404:
                if absent_ok:
                    return None
                raise om.OciImageNotFoundException(he) from he
            raise

        return res

    def manifest(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        absent_ok: bool=False,
        accept: str=None,
    ) -> om.OciImageManifest | om.OciImageManifestList | None:
        '''
        returns the parsed OCI Manifest for the given image reference. If the optional `accept`
        argument is passed, the given value will be set as `Accept` HTTP Header when retrieving
        the manifest (defaults to `om.MimeTypes.single_image`, which requests a single Oci Image
        manifest, with a preference for the mimetype defined by OCI, and accepting docker's
        mimetype as a fallback).

        If `om.MimeTypes.prefer_multiarch` is passed, and the underlying OCI Artifact is a
        "multi-arch" artifact, the returned value is (parsed into) a OciImageManifestList.
        '''
        res = self.manifest_raw(
            image_reference=image_reference,
            absent_ok=absent_ok,
            accept=accept,
        )

        if not res and absent_ok:
            return None

        manifest_dict = res.json()

        if (schema_version := int(manifest_dict.get('schemaVersion', 2))) != 2:
            raise NotImplementedError(f'{schema_version=} is not supported: {image_reference=}')

        return om.as_manifest(manifest_dict)

    def put_manifest(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        manifest: bytes,
    ) -> requests.Response:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        scope = _scope(image_reference=image_reference, action='push,pull')

        parsed = json.loads(manifest)
        content_type = parsed.get('mediaType', om.OCI_MANIFEST_SCHEMA_V2_MIME)

        logger.debug(f'pushing manifest {image_reference=} {content_type=}')

        res = self._request(
            url=self.routes.manifest_url(image_reference=image_reference),
            image_reference=image_reference,
            scope=scope,
            method='PUT',
            raise_for_status=False,
            headers={
                'Content-Type': content_type,
            },
            data=manifest,
        )

        if not res.ok:
            logger.warning(f'our manifest was rejected: {image_reference=} {res.content=}')
        res.raise_for_status()

        return res

    def blob(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        digest: str,
        stream=True,
        absent_ok=False,
    ) -> requests.Response | None:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        scope = _scope(image_reference=image_reference, action='pull')

        res = self._request(
            url=self.routes.blob_url(image_reference=image_reference, digest=digest),
            image_reference=image_reference,
            scope=scope,
            method='GET',
            stream=stream,
            timeout=None,
            raise_for_status=False,
        )

        if absent_ok and res.status_code == requests.codes.NOT_FOUND: # noqa
            return None
        res.raise_for_status()

        return res

    def head_blob(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        digest: str,
        absent_ok=True,
    ) -> requests.Response:
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        scope = _scope(image_reference=image_reference, action='pull')

        res = self._request(
            url=self.routes.blob_url(
                image_reference=image_reference,
                digest=digest,
            ),
            method='HEAD',
            scope=scope,
            image_reference=image_reference,
            raise_for_status=False,
            warn_if_not_ok=not absent_ok,
        )

        if absent_ok and res.status_code == 404:
            return res

        res.raise_for_status()

        return res

    def put_blob(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        digest: str,
        octets_count: int,
        data: bytes | str | os.PathLike | typing.BinaryIO | typing.Iterable[bytes],
        force: bool=False,
    ) -> requests.Response | None:
        '''
        uploads the given blob; `data` may be passed as bytes, file-like object, path to a
        regular file, or an iterable of chunks (which will be spooled into a temporary file).

        uploads are skipped if the blob already exists in the target repository, unless `force`
        is set. Returns `None` in the latter case.
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        if not force:
            head_res = self.head_blob(
                image_reference=image_reference,
                digest=digest,
            )
            if head_res.ok:
                logger.debug(f'skipping blob upload {digest=} - already exists')
                return None

        if isinstance(data, (str, os.PathLike)):
            with open(data, 'rb') as f:
                return self._put_blob_single_post(
                    image_reference=image_reference,
                    digest=digest,
                    octets_count=octets_count,
                    data=f,
                )

        if isinstance(data, bytes) or hasattr(data, 'read'):
            return self._put_blob_single_post(
                image_reference=image_reference,
                digest=digest,
                octets_count=octets_count,
                data=data,
            )

        # workaround: write into temporary file, as not all registries implement
        # chunked-upload, and requests will not properly work w/ all generators
        with tempfile.TemporaryFile() as tf:
            for chunk in data:
                tf.write(chunk)
            tf.seek(0)

            return self._put_blob_single_post(
                image_reference=image_reference,
                digest=digest,
                octets_count=octets_count,
                data=tf,
            )

    def mount_blob(
        self,
        image_reference: typing.Union[str, om.OciImageReference],
        digest: str,
        source_image_reference: typing.Union[str, om.OciImageReference],
    ) -> bool:
        '''
        attempts to cross-repository-mount the blob with the given digest from
        `source_image_reference`'s repository into `image_reference`'s repository.

        returns `True` if the blob is available in target repository afterwards. `False` is
        returned if mounting is not possible (different registries), or was declined by the
        registry (in which case the caller needs to fallback to copying).
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        source_image_reference = om.OciImageReference.to_image_ref(source_image_reference)

        if image_reference.netloc != source_image_reference.netloc:
            return False

        if image_reference.name == source_image_reference.name:
            return self.head_blob(image_reference=image_reference, digest=digest).ok

        res = self._request(
            url=self.routes.mount_blob_url(
                image_reference=image_reference,
                digest=digest,
                source_image_reference=source_image_reference,
            ),
            image_reference=image_reference,
            scope=_scope(image_reference=image_reference, action='push,pull'),
            method='POST',
            headers={
                'Content-Length': '0',
            },
            raise_for_status=False,
            warn_if_not_ok=False,
        )

        if res.status_code == 201:
            logger.debug(f'mounted {digest=} from {source_image_reference=}')
            return True

        if res.status_code == 202:
            # registry declined to mount, and started an upload-session instead
            logger.info(f'registry declined to mount {digest=} into {image_reference=}')
            return False

        res.raise_for_status()
        return False

    def _put_blob_single_post(
        self,
        image_reference: om.OciImageReference,
        digest: str,
        octets_count: int,
        data: bytes | typing.BinaryIO,
    ) -> requests.Response:
        logger.debug(f'single-post {image_reference=} {octets_count=}')
        scope = _scope(image_reference=image_reference, action='push,pull')

        # according to distribution-spec, single-POST should also work - however this seems not
        # to be true for registry-1.docker.io. Therefore, always do a two-step upload
        res = self._request(
            url=self.routes.uploads_url(
                image_reference=image_reference,
            ),
            image_reference=image_reference,
            scope=scope,
            method='POST',
        )

        upload_url = res.headers.get('Location')

        # returned url _may_ be relative
        if upload_url.startswith('/'):
            parsed_url = urllib.parse.urlparse(res.url)
            upload_url = f'{parsed_url.scheme}://{parsed_url.netloc}{upload_url}'

        if '?' in upload_url:
            prefix = '&'
        else:
            prefix = '?'

        upload_url += prefix + urllib.parse.urlencode({'digest': digest})

        res = self._request(
            url=upload_url,
            image_reference=image_reference,
            scope=scope,
            method='PUT',
            headers={
                'content-type': 'application/octet-stream',
                'content-length': str(octets_count),
            },
            data=data,
            raise_for_status=False,
        )

        if not res.status_code == 201: # spec says it MUST be 201
            logger.warning(f'{image_reference=} {res.status_code=} {digest=} - PUT may have failed')

        res.raise_for_status()

        return res
