import pytest

from webshot import endpoint_source
from webshot.data_model import EndpointSourceError

NESSUS_REPORT = """<?xml version="1.0" ?>
<NessusClientData_v2>
<Report name="dmz">
<ReportHost name="10.0.0.1">
<ReportItem port="80" svc_name="www" protocol="tcp" severity="0" pluginID="22964" pluginName="Service Detection" pluginFamily="Service detection">
<plugin_output>A web server is running on this port.</plugin_output>
</ReportItem>
<ReportItem port="443" svc_name="www" protocol="tcp" severity="0" pluginID="22964" pluginName="Service Detection" pluginFamily="Service detection">
<plugin_output>A TLSv1.2 server answered on this port.

A web server is running on this port through TLSv1.2.</plugin_output>
</ReportItem>
<ReportItem port="22" svc_name="ssh" protocol="tcp" severity="0" pluginID="22964" pluginName="Service Detection" pluginFamily="Service detection">
<plugin_output>An SSH server is running on this port.</plugin_output>
</ReportItem>
<ReportItem port="80" svc_name="www" protocol="tcp" severity="0" pluginID="10107" pluginName="HTTP Server Type and Version" pluginFamily="Web Servers">
<plugin_output>The remote web server type is : nginx</plugin_output>
</ReportItem>
</ReportHost>
<ReportHost name="10.0.0.2">
<ReportItem port="8080" svc_name="www" protocol="tcp" severity="0" pluginID="22964" pluginName="Service Detection" pluginFamily="Service detection">
<plugin_output>A web server is running on this port.</plugin_output>
</ReportItem>
<ReportItem port="8080" svc_name="www" protocol="tcp" severity="0" pluginID="22964" pluginName="Service Detection" pluginFamily="Service detection">
<plugin_output>A web server is running on this port.</plugin_output>
</ReportItem>
</ReportHost>
</Report>
</NessusClientData_v2>
"""

NMAP_REPORT = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE nmaprun>
<nmaprun scanner="nmap" args="nmap -sV -oX scan.xml 10.0.0.0/24" version="7.94">
<host><status state="up"/>
<address addr="10.0.0.5" addrtype="ipv4"/>
<ports>
<port protocol="tcp" portid="80"><state state="open"/><service name="http" product="nginx"/></port>
<port protocol="tcp" portid="443"><state state="open"/><service name="http" tunnel="ssl"/></port>
<port protocol="tcp" portid="8443"><state state="open"/><service name="https-alt"/></port>
<port protocol="tcp" portid="8080"><state state="closed"/><service name="http-proxy"/></port>
<port protocol="tcp" portid="22"><state state="open"/><service name="ssh"/></port>
<port protocol="udp" portid="80"><state state="open"/><service name="http"/></port>
</ports>
</host>
</nmaprun>
"""


class TestLoadEndpoints:

    def test_nessus_report(self, tmp_path):
        nessus_file = tmp_path / 'scan.nessus'
        nessus_file.write_text(NESSUS_REPORT)

        endpoints = endpoint_source.load_endpoints(str(nessus_file))

        assert endpoints == ['http://10.0.0.1:80', 'https://10.0.0.1:443', 'http://10.0.0.2:8080']

    def test_nmap_report(self, tmp_path):
        nmap_file = tmp_path / 'scan.xml'
        nmap_file.write_text(NMAP_REPORT)

        endpoints = endpoint_source.load_endpoints(str(nmap_file))

        assert endpoints == ['http://10.0.0.5:80', 'https://10.0.0.5:443', 'https://10.0.0.5:8443']

    def test_host_list(self, tmp_path):
        host_file = tmp_path / 'hosts.txt'
        host_file.write_text("# web servers\n"
                             "10.0.0.1\n"
                             "\n"
                             "intranet.example.com:8080\n"
                             "https://portal.example.com:8443/login\n"
                             "10.0.0.1\n")

        endpoints = endpoint_source.load_endpoints(str(host_file))

        assert endpoints == ['http://10.0.0.1',
                             'http://intranet.example.com:8080',
                             'https://portal.example.com:8443/login']

    def test_host_list_cidr(self, tmp_path):
        host_file = tmp_path / 'hosts.txt'
        host_file.write_text("192.168.5.0/30\n")

        endpoints = endpoint_source.load_endpoints(str(host_file))

        assert endpoints == ['http://192.168.5.1', 'http://192.168.5.2']

    def test_host_list_prepend_https(self, tmp_path):
        host_file = tmp_path / 'hosts.txt'
        host_file.write_text("10.0.0.1:8080\nhttp://10.0.0.2:80\n")

        endpoints = endpoint_source.load_endpoints(str(host_file), prepend_https=True)

        assert endpoints == ['http://10.0.0.1:8080', 'https://10.0.0.1:8080', 'http://10.0.0.2:80']

    def test_host_list_append_ports(self, tmp_path):
        host_file = tmp_path / 'hosts.txt'
        host_file.write_text("10.0.0.1\n10.0.0.2:9000\nhttps://portal.example.com\n")
        port_file = tmp_path / 'PortList.txt'
        port_file.write_text("80\n443, 8443\n# proxies\n80\n")

        endpoints = endpoint_source.load_endpoints(str(host_file), append_ports=True,
                                                   port_list_path=str(port_file))

        assert endpoints == ['http://10.0.0.1:80',
                             'http://10.0.0.1:443',
                             'http://10.0.0.1:8443',
                             'http://10.0.0.2:9000',
                             'https://portal.example.com:80',
                             'https://portal.example.com:443',
                             'https://portal.example.com:8443']

    def test_append_ports_requires_port_list(self, tmp_path):
        host_file = tmp_path / 'hosts.txt'
        host_file.write_text("10.0.0.1\n")

        with pytest.raises(EndpointSourceError):
            endpoint_source.load_endpoints(str(host_file), append_ports=True)

    def test_invalid_port_in_port_list(self, tmp_path):
        port_file = tmp_path / 'PortList.txt'
        port_file.write_text("80\n99999\n")

        with pytest.raises(EndpointSourceError):
            endpoint_source.load_port_list(str(port_file))

    def test_missing_file(self, tmp_path):
        with pytest.raises(EndpointSourceError) as exc_info:
            endpoint_source.load_endpoints(str(tmp_path / 'missing.txt'))
        assert 'missing.txt' in str(exc_info.value)

    def test_malformed_xml(self, tmp_path):
        bad_file = tmp_path / 'scan.nessus'
        bad_file.write_text("<NessusClientData_v2><Report>")

        with pytest.raises(EndpointSourceError):
            endpoint_source.load_endpoints(str(bad_file))

    def test_unsupported_xml(self, tmp_path):
        xml_file = tmp_path / 'other.xml'
        xml_file.write_text("<inventory><host>10.0.0.1</host></inventory>")

        with pytest.raises(EndpointSourceError):
            endpoint_source.load_endpoints(str(xml_file))


class TestDedup:

    def test_exact_match_keeps_first(self):
        endpoints = ['http://10.0.0.1:80', 'http://10.0.0.1:8080', 'http://10.0.0.1:80']

        assert endpoint_source.dedup(endpoints) == ['http://10.0.0.1:80', 'http://10.0.0.1:8080']

    def test_prefix_is_not_a_duplicate(self):
        # 'http://10.0.0.1:80' is contained in 'http://10.0.0.1:8080' but is a different endpoint
        endpoints = ['http://10.0.0.1:8080', 'http://10.0.0.1:80']

        assert endpoint_source.dedup(endpoints) == endpoints
