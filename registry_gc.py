#!/usr/bin/env python

import requests
from requests.packages.urllib3.exceptions import InsecureRequestWarning
import copy
import json
import logging
import re
import sys
import os
import argparse
import collections
import www_authenticate
import ciso8601
import dateutil.tz
from datetime import timedelta, datetime as dt
from getpass import getpass

# this is a registry garbage collector, it can:
# - list every repository and tag of a registry with its creation time
# - delete tags older than N days
# - keep or select tags by regexp over "repo:tag"
#
# run
# registry_gc.py -h
# to get more help
#
# important: deleting manifests only unlinks them, run the garbage collector
# on your registry host afterwards to reclaim the space:
# docker run registry:2 bin/registry garbage-collect \
# /etc/docker/registry/config.yml
#
# for more detail on garbage collection read here:
# https://docs.docker.com/registry/garbage-collection/


# report-only unless a threshold is given
CONST_REPORT_ONLY_DAYS = -1

# number of repositories requested per catalog page
CONST_CATALOG_PAGE_SIZE = 100

MEDIA_TYPE_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_MANIFEST_V1 = "application/vnd.docker.distribution.manifest.v1+json"
MEDIA_TYPE_MANIFEST_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"
MEDIA_TYPE_OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"

KEEP = "keep"
DELETE = "delete"
REPORT = "report"


class RegistryError(Exception):
    """Fatal error, nothing downstream can proceed."""


class ResolveError(Exception):
    """A single tag could not be resolved to a creation time."""


class MissingMetadata(ResolveError):
    pass


class MalformedPayload(ResolveError):
    pass


class UpstreamError(ResolveError):
    pass


RepositoryRef = collections.namedtuple("RepositoryRef", ["base_url", "name"])

TagDescriptor = collections.namedtuple("TagDescriptor", ["tag", "digest", "media_type"])

TagRecord = collections.namedtuple("TagRecord", ["repository", "tag", "digest", "created"])

RetentionPolicy = collections.namedtuple(
    "RetentionPolicy", ["threshold_days", "keep_pattern", "remove_pattern", "dry_run"])

DeletionOutcome = collections.namedtuple(
    "DeletionOutcome", ["digest", "target", "success", "error", "dry_run"])

# manifest shapes, decided by the presence of "config" or "history"
Schema1Manifest = collections.namedtuple("Schema1Manifest", ["v1_compatibility"])
Schema2Manifest = collections.namedtuple("Schema2Manifest", ["config_digest", "config_media_type"])


# this class is created for testing
class Requests:

    def __init__(self, auth_method="POST"):
        self._bearer_auth_token = None
        self.auth_schemes = []
        self.username = None
        self.password = None
        self.auth_method = auth_method

    def _refresh_bearer_auth_token(self, auth, headers):
        oauth = www_authenticate.parse(headers['Www-Authenticate'])
        if 'bearer' not in oauth:
            raise RegistryError('no bearer challenge in: {0}'.format(headers['Www-Authenticate']))
        auth_method = self.auth_method.upper()

        logging.debug('[auth][answer] Auth header:')
        logging.debug(oauth['bearer'])

        request_url = '{0}'.format(oauth['bearer']['realm'])
        query_separator = '?'
        if 'service' in oauth['bearer']:
            request_url += '{0}service={1}'.format(query_separator, oauth['bearer']['service'])
            query_separator = '&'
        if 'scope' in oauth['bearer']:
            request_url += '{0}scope={1}'.format(query_separator, oauth['bearer']['scope'])

        logging.debug('[auth][request] Refreshing auth token: {0} {1}'.format(auth_method, request_url))

        if auth_method == 'GET':
            try_oauth = self._request("get", request_url, auth=auth, headers={'Accept': 'application/json'})
        else:
            try_oauth = self._request("post", request_url, auth=auth, headers={'Accept': 'application/json'})

        try:
            oauth_response = try_oauth.json()
            logging.debug('[auth][request] Response content: {0}'.format(oauth_response))
            token = oauth_response['access_token'] if 'access_token' in oauth_response else oauth_response['token']
        except (ValueError, KeyError, TypeError):
            raise RegistryError('could not acquire token: {0}'.format(try_oauth.content))

        logging.debug('[auth] token issued')

        self._bearer_auth_token = token

    def init_auth_schemes(self, url, verify):
        """ Updates list of auth schemes(lowcased) if www-authenticate: header exists
             - www-authenticate: basic
             - www-authenticate: bearer
        """
        try_oauth = requests.head(url, verify=verify)

        logging.debug("[auth][registry] Headers: \n{0}".format(try_oauth.headers))

        if 'Www-Authenticate' in try_oauth.headers:
            oauth = www_authenticate.parse(try_oauth.headers['Www-Authenticate'])
            logging.debug('[auth][registry] Auth schemes found:{0}'.format([m for m in oauth]))
            self.auth_schemes = [m.lower() for m in oauth]
        else:
            logging.debug("[auth][registry] No Auth schemes found")
            self.auth_schemes = []

    def request(self, method, url, **kwargs):
        if 'bearer' in self.auth_schemes:
            auth = (('', '') if self.username in ["", None] else (self.username, self.password))
            res = self._bearer_request(method, url, auth=auth, **kwargs)
        else:
            auth = (None if self.username in ["", None] else (self.username, self.password))
            res = self._request(method, url, auth=auth, **kwargs)
        return res

    @staticmethod
    def _request(method, url, **kwargs):
        res = requests.request(method, url, **kwargs)
        if str(res.status_code)[0] != '2':
            msg = ' \n[error][registry] Request failed'
            msg += '\n[error][registry][request] method {0}: url: {1}'.format(method, res.url)
            msg += '\n[error][registry][response] status: {0}'.format(res.status_code)
            msg += '\n[error][registry][response] headers: {0}'.format(res.headers)
            msg += '\n[error][registry][response] content: {0}'.format(res.content)
            logging.debug(msg)
        else:
            logging.debug("[registry][request] method {0}: url: {1}: accept".format(method, res.url))
        return res

    def _bearer_request(self, method, url, auth, **kwargs):
        local_kwargs = copy.deepcopy(kwargs)
        local_kwargs.setdefault("headers", {})

        if method.upper() == "DELETE":
            local_kwargs["headers"].pop("Accept", None)

        if self._bearer_auth_token:
            local_kwargs['headers']['Authorization'] = 'Bearer {0}'.format(self._bearer_auth_token)

        res = self._request(method, url, **local_kwargs)
        if str(res.status_code)[0] == '2':
            return res

        if res.status_code == 401 and 'Www-Authenticate' in res.headers:
            self._refresh_bearer_auth_token(auth, res.headers)
            local_kwargs['headers']['Authorization'] = 'Bearer {0}'.format(self._bearer_auth_token)
        else:
            return res

        res = self._request(method, url, **local_kwargs)
        return res


def natural_keys(text):
    """
    alist.sort(key=natural_keys) sorts in human order
    http://nedbatchelder.com/blog/200712/human_sorting.html
    (See Toothy's implementation in the comments)
    """

    def __atoi(text):
        return int(text) if text.isdigit() else text

    return [__atoi(c) for c in re.split(r'(\d+)', text)]


def get_error_explanation(context, error_code):
    error_list = {"delete_manifest_405": 'You might want to set REGISTRY_STORAGE_DELETE_ENABLED: "true" in your registry',
                  "get_tag_digest_404": "Try adding flag --digest-method=GET"}

    key = "%s_%s" % (context, error_code)

    if key in error_list.keys():
        return(error_list[key])

    return ''


def format_rfc3339(value):
    formatted = value.isoformat(timespec='seconds')
    if formatted.endswith('+00:00'):
        return formatted[:-len('+00:00')] + 'Z'
    return formatted


def retention_cutoff(now, days):
    # thresholds reaching before year 1 keep everything
    try:
        return now - timedelta(days=days)
    except OverflowError:
        return dt.min.replace(tzinfo=dateutil.tz.tzutc())


def qualified_name(record):
    return "{0}:{1}".format(record.repository, record.tag)


# class to manipulate registry
class Registry:

    # every manifest shape the resolver understands
    MANIFEST_HEADERS = {"Accept": ", ".join([MEDIA_TYPE_MANIFEST_V2,
                                            MEDIA_TYPE_OCI_MANIFEST,
                                            MEDIA_TYPE_MANIFEST_V1_SIGNED,
                                            MEDIA_TYPE_MANIFEST_V1])}

    JSON_HEADERS = {"Accept": "application/json"}

    def __init__(self):
        self.hostname = None
        self.no_validate_ssl = False
        self.http = None
        self.last_error = None
        self.base_path = ''
        self.digest_method = "HEAD"

    @staticmethod
    def parse_login(login):
        if login is None:
            return (None, None)

        if ':' not in login:
            raise RegistryError("Please provide -l in the form USER:PASSWORD")

        (username, password) = login.split(':', 1)
        username = username.strip('"').strip("'")
        password = password.strip('"').strip("'")
        return (username, password)

    @staticmethod
    def _create(host, login, no_validate_ssl, base_path='', digest_method="HEAD", auth_method="POST"):
        r = Registry()

        (username, password) = r.parse_login(login)

        r.hostname = host.rstrip('/')
        r.base_path = base_path.strip('/') + '/' if base_path.strip('/') else ''
        r.no_validate_ssl = no_validate_ssl
        r.http = Requests(auth_method=auth_method)
        r.http.username = username
        r.http.password = password
        r.digest_method = digest_method
        return r

    @staticmethod
    def create(*args, **kw):
        return Registry._create(*args, **kw)

    def repository(self, name):
        base_url = self.hostname
        if self.base_path:
            base_url += '/' + self.base_path.rstrip('/')
        return RepositoryRef(base_url, name)

    def send(self, path, method="GET", headers=None, params=None):
        if not headers:
            headers = self.MANIFEST_HEADERS

        try:
            result = self.http.request(
                method,
                "{0}{1}".format(self.hostname, path),
                headers=headers,
                params=params,
                verify=not self.no_validate_ssl
            )
        except requests.exceptions.RequestException as e:
            self.last_error = str(e)
            return None

        if str(result.status_code)[0] == '2':
            self.last_error = None
            return result

        self.last_error = result.status_code
        return None

    def init_auth_schemes(self):
        # Updates list of auth schemes for the registry
        catalog_path = "/v2/{0}_catalog".format(self.base_path)
        self.http.init_auth_schemes('{0}{1}'.format(self.hostname, catalog_path), verify=not self.no_validate_ssl)

    def list_repositories(self):
        """Yields every repository name in the catalog, page by page.

        The cursor sent with each page request is the last name of the
        previous page; the stream ends when the registry stops sending
        a ``rel="next"`` link. Any failure is fatal, since later pages
        cannot be requested without a valid cursor.
        """
        seen = set()
        last = None
        while True:
            params = {'n': CONST_CATALOG_PAGE_SIZE}
            if last is not None:
                params['last'] = last

            result = self.send('/v2/{0}_catalog'.format(self.base_path),
                               headers=self.JSON_HEADERS, params=params)
            if result is None:
                raise RegistryError("cannot list catalog (last={0}): {1}".format(last, self.last_error))

            try:
                page = result.json().get('repositories') or []
            except (ValueError, AttributeError):
                raise RegistryError("list_repositories: invalid json response")

            names = [name for name in page if name]
            for name in names:
                if name not in seen:
                    seen.add(name)
                    yield name

            if not names or 'next' not in result.links:
                return
            last = names[-1]

    def list_tags(self, image_name):
        result = self.send("/v2/{0}{1}/tags/list".format(self.base_path, image_name),
                           headers=self.JSON_HEADERS)
        if result is None:
            raise RegistryError("cannot list tags of {0}: {1}".format(image_name, self.last_error))

        try:
            tags_list = result.json().get('tags')
        except (ValueError, AttributeError):
            raise RegistryError("list_tags: invalid json response for {0}".format(image_name))

        if not tags_list:
            return []

        tags_list = [tag for tag in tags_list if tag]
        tags_list.sort(key=natural_keys)
        return tags_list

    def get_descriptor(self, image_name, tag):
        image_headers = self.send("/v2/{0}{1}/manifests/{2}".format(
            self.base_path, image_name, tag), method=self.digest_method)

        if image_headers is None:
            explanation = get_error_explanation("get_tag_digest", self.last_error)
            raise UpstreamError("tag digest not found: {0}. {1}".format(self.last_error, explanation).strip())

        tag_digest = image_headers.headers.get('Docker-Content-Digest')
        if not tag_digest:
            raise UpstreamError("no Docker-Content-Digest header for tag {0}".format(tag))

        media_type = image_headers.headers.get('Content-Type')
        return TagDescriptor(tag, tag_digest, media_type)

    def get_manifest(self, image_name, digest):
        result = self.send("/v2/{0}{1}/manifests/{2}".format(
            self.base_path, image_name, digest))
        if result is None:
            return None
        return result.text

    def get_blob(self, image_name, digest, media_type=None):
        headers = {"Accept": media_type or "application/json"}
        result = self.send("/v2/{0}{1}/blobs/{2}".format(
            self.base_path, image_name, digest), headers=headers)
        if result is None:
            return None
        return result.text

    def delete_manifest(self, image_name, digest):
        url = "/v2/{0}{1}/manifests/{2}".format(self.base_path, image_name, digest)
        delete_result = self.send(url, method="DELETE")
        if delete_result is None:
            logging.warning("delete failed on {0}, error: {1}".format(url, self.last_error))
            explanation = get_error_explanation("delete_manifest", self.last_error)
            if explanation:
                logging.warning(explanation)
        return delete_result


def _decode_document(text, error, what):
    try:
        document = json.loads(text)
    except (TypeError, ValueError) as e:
        raise error("{0} is not valid JSON: {1}".format(what, e))
    if not isinstance(document, dict):
        raise error("{0} is not a JSON object".format(what))
    return document


def parse_manifest(payload):
    """Decodes a manifest payload into Schema2Manifest or Schema1Manifest.

    Schema 2 (and OCI) manifests reference a config blob through
    ``config.digest``. Schema 1 manifests embed the image metadata as a
    JSON string in ``history[0].v1Compatibility``; later history entries
    are never consulted. Anything else is rejected.
    """
    document = _decode_document(payload, MalformedPayload, "manifest")

    if 'config' in document:
        config = document['config']
        if not isinstance(config, dict) or not isinstance(config.get('digest'), str):
            raise MalformedPayload("manifest config has no digest")
        return Schema2Manifest(config['digest'], config.get('mediaType'))

    if 'history' in document:
        history = document['history']
        if not isinstance(history, list):
            raise MalformedPayload("manifest history is not an array")
        if not history:
            raise MissingMetadata("manifest history is empty")
        entry = history[0]
        if not isinstance(entry, dict) or not isinstance(entry.get('v1Compatibility'), str):
            raise MalformedPayload("first history entry has no v1Compatibility")
        return Schema1Manifest(entry['v1Compatibility'])

    raise MissingMetadata("manifest has neither config nor history")


def parse_created(document):
    if 'created' not in document:
        raise MissingMetadata("no created field")

    created = document['created']
    if not isinstance(created, str):
        raise MalformedPayload("created is not a string: {0!r}".format(created))

    # RFC 3339 only, fractions beyond microseconds are truncated:
    #   2019-01-18T08:27:13.423156538Z
    #   1970-01-01T00:00:00Z
    try:
        return ciso8601.parse_rfc3339(created)
    except ValueError as e:
        raise MalformedPayload("cannot parse created timestamp as RFC3339 '{0}': {1}".format(created, e))


def resolve_creation_time(registry, image_name, digest):
    payload = registry.get_manifest(image_name, digest)
    if payload is None:
        raise UpstreamError("cannot get manifest {0}: {1}".format(digest, registry.last_error))

    manifest = parse_manifest(payload)

    if isinstance(manifest, Schema2Manifest):
        blob = registry.get_blob(image_name, manifest.config_digest, manifest.config_media_type)
        if blob is None:
            raise UpstreamError("cannot get config blob {0}: {1}".format(
                manifest.config_digest, registry.last_error))
        config = _decode_document(blob, MalformedPayload, "config blob")
    else:
        config = _decode_document(manifest.v1_compatibility, MissingMetadata, "v1Compatibility")

    return parse_created(config)


def collect_tag_records(registry, repository):
    records = []
    for tag in registry.list_tags(repository.name):
        try:
            descriptor = registry.get_descriptor(repository.name, tag)
        except ResolveError as e:
            logging.error("cannot get tag info for {0}:{1}: {2}".format(repository.name, tag, e))
            continue

        try:
            created = resolve_creation_time(registry, repository.name, descriptor.digest)
        except ResolveError as e:
            logging.error("cannot resolve creation time of {0}:{1} digest {2}: {3}: {4}".format(
                repository.name, tag, descriptor.digest, type(e).__name__, e))
            continue

        records.append(TagRecord(repository.name, tag, descriptor.digest, created))
    return records


def evaluate(record, policy, now):
    if policy.threshold_days is None:
        return REPORT

    name = qualified_name(record)
    if policy.keep_pattern is not None and policy.keep_pattern.search(name):
        return KEEP

    # strictly older than the cutoff, equality is not old enough
    if not record.created < retention_cutoff(now, policy.threshold_days):
        return KEEP

    if policy.remove_pattern is not None:
        return DELETE if policy.remove_pattern.search(name) else KEEP

    return DELETE


def apply_decision(registry, record, decision, dry_run):
    target = qualified_name(record)
    line = "repo:{0}, digest: {1}, created: {2}".format(target, record.digest, format_rfc3339(record.created))

    if decision == REPORT:
        logging.info("FOUND: " + line)
        return None

    if decision == KEEP:
        logging.debug("keep: " + line)
        return None

    if dry_run:
        logging.info("DRY: " + line)
        return DeletionOutcome(record.digest, target, True, None, True)

    logging.info(line)
    if registry.delete_manifest(record.repository, record.digest) is None:
        return DeletionOutcome(record.digest, target, False, registry.last_error, False)

    return DeletionOutcome(record.digest, target, True, None, False)


def _regexp(value):
    try:
        return re.compile(value)
    except re.error as e:
        raise argparse.ArgumentTypeError("invalid regexp '{0}': {1}".format(value, e))


def parse_args(args=None):
    parser = argparse.ArgumentParser(
        description="Report or delete old tags from a Docker registry",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=("""
IMPORTANT: deleting manifests only unlinks them, run the garbage collector
           on your registry host afterwards:

   docker run registry:2 bin/registry garbage-collect \\
       /etc/docker/registry/config.yml

for more detail on garbage collection read here:
   https://docs.docker.com/registry/garbage-collection/
                """))
    parser.add_argument(
        'host',
        help="URL of the registry server, e.g. https://example.com:5000",
        metavar="URL")

    parser.add_argument(
        '-l', '--login',
        help="Login and password for access to docker registry",
        required=False,
        metavar="USER:PASSWORD")

    parser.add_argument(
        '-w', '--read-password',
        help="Read password from stdin (and prompt if stdin is a TTY); " +
             "the final line-ending character(s) will be removed; " +
             "the :PASSWORD portion of the -l option is not required and " +
             "will be ignored",
        action='store_const',
        default=False,
        const=True)

    parser.add_argument(
        '-p', '--path',
        help="Path to registry on the server, needed for Artifactory-based repos, "
             "e.g. 'dir' in https://example.com:5000/dir",
        required=False,
        default='')

    parser.add_argument(
        '-n', '--num',
        help=('Number of days to keep; tags created before that are deleted. '
              'Negative only reports every tag ({0} if not set)').format(CONST_REPORT_ONLY_DAYS),
        type=int,
        default=CONST_REPORT_ONLY_DAYS,
        metavar='DAYS')

    parser.add_argument(
        '--dry-run',
        help=('Only log the tags that would be deleted'),
        action='store_const',
        default=False,
        const=True)

    parser.add_argument(
        '--keep-like',
        help="Tags whose repo:tag matches this regexp are never deleted",
        type=_regexp,
        default=None,
        metavar="REGEXP")

    parser.add_argument(
        '--remove-like',
        help="Only tags whose repo:tag matches this regexp are deleted",
        type=_regexp,
        default=None,
        metavar="REGEXP")

    parser.add_argument(
        '--images-like',
        nargs='+',
        help="List of images (regexp check) that will be handled",
        type=_regexp,
        required=False,
        default=[])

    parser.add_argument(
        '--debug',
        help=('Turn debug output'),
        action='store_const',
        default=False,
        const=True)

    parser.add_argument(
        '--no-validate-ssl',
        help="Disable ssl validation",
        action='store_const',
        default=False,
        const=True)

    parser.add_argument(
        '--digest-method',
        help=('Use HEAD for standard docker registry or GET for NEXUS'),
        default='HEAD',
        choices=['HEAD', 'GET'],
        metavar="HEAD|GET"
    )
    parser.add_argument(
         '--auth-method',
         help=('Use POST or GET to get JWT tokens'),
         default='POST',
         choices=['POST', 'GET'],
         metavar="POST|GET"
    )
    return parser.parse_args(args)


def build_policy(args):
    threshold = args.num if args.num >= 0 else None
    return RetentionPolicy(threshold, args.keep_like, args.remove_like, args.dry_run)


def keep_images_like(image_list, regexp_list):
    for image in image_list:
        for regexp in regexp_list:
            if regexp.search(image):
                yield image
                break


def read_login(login):
    if login is None:
        raise RegistryError("Please provide -l when using -w")

    username = login.split(':', 1)[0]

    if sys.stdin.isatty():
        # likely interactive usage
        password = getpass()

    else:
        # allow password to be piped or redirected in
        password = sys.stdin.read()

        if len(password) == 0:
            raise RegistryError("Password was not provided")

        if password[-(len(os.linesep)):] == os.linesep:
            password = password[0:-(len(os.linesep))]

    return username + ':' + password


def main_loop(args, now=None):

    if args.debug:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    logging.basicConfig(format='%(asctime)s %(levelname)-10s %(message)s',
                        datefmt='%d-%b-%y %H:%M:%S',
                        level=log_level)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    if now is None:
        now = dt.now(tz=dateutil.tz.tzutc())

    policy = build_policy(args)

    if args.no_validate_ssl:
        requests.packages.urllib3.disable_warnings(InsecureRequestWarning)

    if args.read_password:
        args.login = read_login(args.login)

    registry = Registry.create(args.host, args.login, args.no_validate_ssl,
                               args.path, args.digest_method, args.auth_method)
    registry.init_auth_schemes()

    if policy.threshold_days is None:
        logging.info("No threshold given, only reporting tags")
    else:
        logging.info("Will delete tags created before {0}{1}".format(
            format_rfc3339(retention_cutoff(now, policy.threshold_days)),
            " (dry run)" if policy.dry_run else ""))

    image_list = registry.list_repositories()
    if args.images_like:
        image_list = keep_images_like(image_list, args.images_like)

    outcomes = []
    repositories = 0
    records = 0
    for image_name in image_list:
        repositories += 1
        logging.debug("Image: {0}".format(image_name))

        for record in collect_tag_records(registry, registry.repository(image_name)):
            records += 1
            outcome = apply_decision(registry, record, evaluate(record, policy, now), policy.dry_run)
            if outcome is not None:
                outcomes.append(outcome)

    logging.info("Done: {0} repositories, {1} tags, {2} deleted, {3} failed{4}".format(
        repositories, records,
        len([o for o in outcomes if o.success]),
        len([o for o in outcomes if not o.success]),
        " (dry run)" if policy.dry_run else ""))
    return outcomes


def main(argv=None):
    args = parse_args(argv)
    try:
        main_loop(args)
    except RegistryError as e:
        logging.error(e)
        sys.exit(1)
    except requests.exceptions.RequestException as e:
        logging.error("cannot reach registry: {0}".format(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Ctrl-C pressed, quitting")
        sys.exit(1)


if __name__ == "__main__":
    main()
