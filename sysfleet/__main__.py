from sysfleet.app import main

main()
