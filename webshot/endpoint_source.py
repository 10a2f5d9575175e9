"""
Endpoint Source Module.

Builds the list of endpoints to capture from an input file. Three formats are
recognized by their content:

- Nessus reports (``.nessus`` XML, root ``NessusClientData_v2``): web
  services found by the "Service Detection" plugin.
- nmap XML output (root ``nmaprun``): open TCP ports running an http service.
- Plain host lists: one host, ``host:port``, URL or CIDR range per line.

The result is deduplicated by exact match, keeping the first occurrence.

Functions:
    load_endpoints: Detect the file type and parse it
    parse_nessus: Parse a Nessus report
    parse_nmap: Parse nmap XML output
    parse_host_file: Parse a host list
    load_port_list: Read ports from a port list file
    dedup: Order-preserving exact-match deduplication
"""

import logging
import os
import re
import xml.etree.ElementTree as ET
from typing import List, Optional
from urllib.parse import urlparse

import netaddr

from webshot import scan_utils
from webshot.data_model import EndpointSourceError

NESSUS_ROOT = 'NessusClientData_v2'
NMAP_ROOT = 'nmaprun'

# Nessus plugin output for a cleartext web service
NESSUS_HTTP_MARKER = 'A web server is running on this port.'


def dedup(endpoints: List[str]) -> List[str]:
    """
    Remove exact duplicates, keeping the first occurrence of each endpoint.

    Example:
        >>> dedup(['http://a:80', 'http://a:8080', 'http://a:80'])
        ['http://a:80', 'http://a:8080']
    """
    seen = set()
    unique = []
    for endpoint in endpoints:
        if endpoint not in seen:
            seen.add(endpoint)
            unique.append(endpoint)
    return unique


def _parse_xml_root(path: str) -> Optional[ET.Element]:
    # Returns None for files that are not XML
    try:
        with open(path, 'rb') as file_fd:
            head = file_fd.read(512).lstrip(b'\xef\xbb\xbf').lstrip()
    except OSError as e:
        raise EndpointSourceError("Could not open file: %s (%s)" % (path, e))

    if not head.startswith(b'<'):
        return None

    try:
        return ET.parse(path).getroot()
    except ET.ParseError as e:
        raise EndpointSourceError("Could not parse XML file: %s (%s)" % (path, e))


def parse_nessus(root: ET.Element) -> List[str]:
    """
    Extract web endpoints from a parsed Nessus report.

    Every ``ReportItem`` of the "Service Detection" plugin that describes a
    web service yields ``http://host:port`` when Nessus saw a cleartext web
    server and ``https://host:port`` otherwise.

    Args:
        root (ET.Element): Root element of the .nessus document

    Returns:
        List[str]: Endpoints in document order, duplicates included
    """
    endpoints = []
    for report_host in root.iter('ReportHost'):
        host_addr = report_host.get('name')
        if not host_addr:
            continue

        for item in report_host.findall('ReportItem'):
            if item.get('pluginName') != 'Service Detection':
                continue

            plugin_output = item.findtext('plugin_output', default='')
            svc_name = item.get('svc_name', '')
            if svc_name not in ('www', 'http', 'https') and 'web server' not in plugin_output:
                continue

            port = item.get('port')
            secure = NESSUS_HTTP_MARKER not in plugin_output
            url = scan_utils.construct_url(host_addr, port, secure)
            if url:
                endpoints.append(url)

    return endpoints


def parse_nmap(root: ET.Element) -> List[str]:
    """
    Extract web endpoints from parsed nmap XML output.

    Open TCP ports whose detected service name contains ``http`` are kept;
    the scheme is https when nmap saw an SSL tunnel or named the service
    https.

    Args:
        root (ET.Element): Root element of the nmap XML document

    Returns:
        List[str]: Endpoints in document order, duplicates included
    """
    endpoints = []
    for host in root.iter('host'):
        address = host.find('address')
        if address is None:
            continue
        addr = address.get('addr')

        try:
            # Validate and normalize IP address
            ip_addr = str(netaddr.IPAddress(addr))
        except (netaddr.core.AddrFormatError, TypeError, ValueError):
            continue

        ports_obj = host.find('ports')
        if ports_obj is None:
            continue

        for port in ports_obj.findall('port'):
            if port.get('protocol') != 'tcp':
                continue

            state = port.find('state')
            if state is None or state.get('state') != 'open':
                continue

            service = port.find('service')
            if service is None:
                continue

            service_name = service.get('name', '')
            if 'http' not in service_name:
                continue

            secure = service.get('tunnel') == 'ssl' or service_name.startswith('https')
            url = scan_utils.construct_url(ip_addr, port.get('portid'), secure)
            if url:
                endpoints.append(url)

    return endpoints


def load_port_list(path: str) -> List[str]:
    """
    Read ports from a port list file, one or more per line separated by
    commas or whitespace. Blank lines and ``#`` comments are skipped.

    Raises:
        EndpointSourceError: If the file cannot be read or holds an invalid port
    """
    try:
        with open(path, 'r') as port_fd:
            lines = port_fd.readlines()
    except OSError as e:
        raise EndpointSourceError("Could not open port list: %s (%s)" % (path, e))

    ports = []
    for line in lines:
        line = line.split('#', 1)[0]
        for port_str in re.split(r'[,\s]+', line.strip()):
            if not port_str:
                continue
            if not port_str.isdigit() or not 0 < int(port_str) < 65536:
                raise EndpointSourceError("Invalid port in %s: %r" % (path, port_str))
            if port_str not in ports:
                ports.append(port_str)
    return ports


def _has_scheme(entry: str) -> bool:
    return entry.lower().startswith(('http://', 'https://'))


def _has_port(entry: str) -> bool:
    if not _has_scheme(entry):
        entry = "//" + entry
    try:
        return urlparse(entry).port is not None
    except ValueError:
        return False


def _expand_entry(entry: str) -> List[str]:
    # CIDR ranges become one entry per host address
    if _has_scheme(entry) or '/' not in entry:
        return [entry]
    try:
        network = netaddr.IPNetwork(entry)
    except (netaddr.core.AddrFormatError, ValueError):
        return [entry]
    if network.size == 1:
        return [str(network.ip)]
    return [str(ip_addr) for ip_addr in network.iter_hosts()]


def _format_host(host: str) -> str:
    if ':' in host and not host.startswith('['):
        try:
            netaddr.IPAddress(host, 6)
            return '[%s]' % host
        except (netaddr.core.AddrFormatError, ValueError):
            pass
    return host


def parse_host_file(lines: List[str], prepend_https: bool = False,
                    ports: Optional[List[str]] = None) -> List[str]:
    """
    Turn the lines of a host list into endpoints.

    Args:
        lines (List[str]): Host list lines
        prepend_https (bool): Emit both http:// and https:// for entries
            without a scheme, instead of http:// alone
        ports (Optional[List[str]]): Ports appended to every entry that does
            not already carry one

    Returns:
        List[str]: Endpoints in file order, duplicates included

    Example:
        >>> parse_host_file(['# dmz', '10.0.0.4/31', 'intranet:8080'], ports=['80'])
        ['http://10.0.0.4:80', 'http://10.0.0.5:80', 'http://intranet:8080']
    """
    endpoints = []
    for line in lines:
        entry = line.strip()
        if not entry or entry.startswith('#'):
            continue

        for host in _expand_entry(entry):
            if ports and not _has_port(host):
                if _has_scheme(host):
                    parsed = urlparse(host)
                    targets = ["%s://%s:%s%s" % (parsed.scheme, parsed.netloc, port, parsed.path)
                               for port in ports]
                else:
                    targets = ["%s:%s" % (_format_host(host), port) for port in ports]
            else:
                targets = [host if _has_scheme(host) else _format_host(host)]

            for target in targets:
                if _has_scheme(target):
                    endpoints.append(target)
                elif prepend_https:
                    endpoints.append("http://" + target)
                    endpoints.append("https://" + target)
                else:
                    endpoints.append("http://" + target)

    return endpoints


def load_endpoints(path: str, prepend_https: bool = False, append_ports: bool = False,
                   port_list_path: Optional[str] = None) -> List[str]:
    """
    Load the endpoints to capture from ``path``.

    The file type is detected from the content: a Nessus report, nmap XML
    output, or anything else as a plain host list. ``prepend_https`` and
    ``append_ports`` only apply to host lists.

    Args:
        path (str): Input file
        prepend_https (bool): Try both schemes for host list entries without one
        append_ports (bool): Append every port of the port list file to host
            list entries without a port
        port_list_path (Optional[str]): Port list file, required with ``append_ports``

    Returns:
        List[str]: Deduplicated endpoints in input order

    Raises:
        EndpointSourceError: If an input file cannot be read or parsed
    """
    if not os.path.isfile(path):
        raise EndpointSourceError("Could not open file: %s" % path)

    root = _parse_xml_root(path)
    if root is not None and root.tag == NESSUS_ROOT:
        logging.getLogger(__name__).debug("Parsing %s as a Nessus report" % path)
        endpoints = parse_nessus(root)
    elif root is not None and root.tag == NMAP_ROOT:
        logging.getLogger(__name__).debug("Parsing %s as nmap XML output" % path)
        endpoints = parse_nmap(root)
    elif root is not None:
        raise EndpointSourceError("Unsupported XML document in %s: <%s>" % (path, root.tag))
    else:
        ports = None
        if append_ports:
            if not port_list_path:
                raise EndpointSourceError("A port list file is required to append ports")
            ports = load_port_list(port_list_path)

        try:
            with open(path, 'r') as host_fd:
                lines = host_fd.readlines()
        except (OSError, UnicodeDecodeError) as e:
            raise EndpointSourceError("Could not read host file: %s (%s)" % (path, e))

        endpoints = parse_host_file(lines, prepend_https, ports)

    endpoints = dedup(endpoints)
    logging.getLogger(__name__).debug("Loaded %d endpoints from %s" % (len(endpoints), path))
    return endpoints
