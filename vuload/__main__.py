from vuload.cli import main

raise SystemExit(main())
